"""
Dead-letter collection for messages that exhausted every retry.

Records are append-only. Both the retry worker (attempts exhausted) and the
dispatch queue (publish retries exhausted, malformed entries) write here,
so an operator has a single place to look for work that was given up on.
"""

from __future__ import annotations

import logging
from typing import Any

from ..store.base import DocumentStore, DocumentTransaction
from .errors import DeadLetterWriteError
from .jobs import DeadLetterRecord, truncate_error

logger = logging.getLogger(__name__)


class DeadLetterStore:
    """Writes DeadLetterRecords into a document store collection."""

    def __init__(self, store: DocumentStore, collection: str = "kv-retry-dead") -> None:
        self.store = store
        self.collection = collection

    async def record(self, topic: str, payload: Any, error: BaseException | str) -> str:
        """Insert a dead-letter record and return its document id.

        Raises:
            DeadLetterWriteError: If the store rejects the insert
        """
        record = DeadLetterRecord(topic=topic, payload=payload, error=truncate_error(error))
        try:
            doc_id = await self.store.add(self.collection, record.to_dict())
        except Exception as e:
            raise DeadLetterWriteError(f"Failed to write dead-letter record: {e}", topic) from e

        logger.warning(
            "Message dead-lettered",
            extra={"topic": topic, "dead_letter_id": doc_id, "error": record.error},
        )
        return doc_id

    def stage(
        self, txn: DocumentTransaction, topic: str, payload: Any, error: BaseException | str
    ) -> str:
        """Stage a dead-letter insert inside another document's transaction."""
        record = DeadLetterRecord(topic=topic, payload=payload, error=truncate_error(error))
        return txn.add(self.collection, record.to_dict())

    async def list_records(self) -> list[dict[str, Any]]:
        """Return every dead-letter record in the collection."""
        return [data for _, data in await self.store.list_documents(self.collection)]
