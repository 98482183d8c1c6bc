"""
In-memory document store for testing.

Invariants:
    - All data is lost on process exit
    - Transactions on the same document are serialized with a per-document lock
    - Insertion order is preserved by list_ids()

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the DocumentStore protocol
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from .base import DocumentTransaction

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """Dict-backed DocumentStore.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> doc_id = await store.add("topic-queue", {"topic": "t"})
        >>> await store.get("topic-queue", doc_id)
        {'topic': 't'}
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._add_failures: list[Exception] = []

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        if self._add_failures:
            raise self._add_failures.pop(0)
        doc_id = uuid.uuid4().hex
        self._collections[collection][doc_id] = copy.deepcopy(data)
        logger.debug("Added document", extra={"collection": collection, "doc_id": doc_id})
        return doc_id

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def list_ids(self, collection: str) -> list[str]:
        return list(self._collections.get(collection, {}))

    async def list_documents(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        return [
            (doc_id, copy.deepcopy(doc))
            for doc_id, doc in self._collections.get(collection, {}).items()
        ]

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self._collections.get(collection, {}).pop(doc_id, None) is not None

    @asynccontextmanager
    async def transaction(self, collection: str, doc_id: str) -> AsyncIterator[DocumentTransaction]:
        async with self._locks[(collection, doc_id)]:
            snapshot = self._collections.get(collection, {}).get(doc_id)
            txn = DocumentTransaction(collection, doc_id, copy.deepcopy(snapshot))

            yield txn

            if txn.pending_delete:
                self._collections[collection].pop(doc_id, None)
            elif txn.pending_update is not None:
                self._collections[collection][doc_id] = txn.merged()

            for other, new_id, data in txn.pending_inserts:
                self._collections[other][new_id] = data

    async def close(self) -> None:
        return None

    # Testing helpers

    def put(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Insert a document with a chosen id."""
        self._collections[collection][doc_id] = copy.deepcopy(data)

    def fail_next_add(self, times: int = 1, exc: Exception | None = None) -> None:
        """Make the next ``times`` add() calls raise ``exc``."""
        for _ in range(times):
            self._add_failures.append(exc or RuntimeError("Injected store failure"))

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    def documents(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._collections.get(collection, {}).values()]
