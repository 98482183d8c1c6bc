"""
Base protocol and types for the primary document store adapter.

kvmirror only touches two small collections of the primary store: the
delayed dispatch queue and the dead-letter collection. This module defines
the surface both need, including a single-document transaction used for
read-check-act updates.

Invariants:
    - add() assigns a unique document id
    - A transaction sees a consistent snapshot of one document and applies
      at most one pending write (update or delete) when it commits
    - Inserts staged with DocumentTransaction.add() commit together with
      that write
    - A transaction that raises leaves the document untouched

How to change safely:
    - Protocol changes require updating all implementations
    - Keep documents JSON-serializable
"""

from __future__ import annotations

import copy
import uuid
from abc import abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import AppConfig


class StoreError(Exception):
    """Base exception for document store operations."""

    pass


class DocumentNotFoundError(StoreError):
    """The document does not exist."""

    pass


class DocumentTransaction:
    """Read-check-act handle for one document.

    Created by a store's transaction() context manager. Reads come from the
    snapshot taken when the transaction began; update()/delete() are staged
    and applied on commit.

    Attributes:
        collection: Collection name
        doc_id: Document identifier
    """

    def __init__(self, collection: str, doc_id: str, snapshot: dict[str, Any] | None) -> None:
        self.collection = collection
        self.doc_id = doc_id
        self._snapshot = snapshot
        self.pending_update: dict[str, Any] | None = None
        self.pending_delete = False
        self.pending_inserts: list[tuple[str, str, dict[str, Any]]] = []

    @property
    def exists(self) -> bool:
        return self._snapshot is not None

    def data(self) -> dict[str, Any]:
        """A copy of the document as read at the start of the transaction.

        Raises:
            DocumentNotFoundError: If the document did not exist
        """
        if self._snapshot is None:
            raise DocumentNotFoundError(f"Document not found: {self.collection}/{self.doc_id}")
        return copy.deepcopy(self._snapshot)

    def update(self, fields: dict[str, Any]) -> None:
        """Stage a merge of ``fields`` into the document."""
        if self._snapshot is None:
            raise DocumentNotFoundError(f"Document not found: {self.collection}/{self.doc_id}")
        self.pending_delete = False
        self.pending_update = {**(self.pending_update or {}), **fields}

    def delete(self) -> None:
        """Stage deletion of the document."""
        self.pending_update = None
        self.pending_delete = True

    def add(self, collection: str, data: dict[str, Any]) -> str:
        """Stage an insert into another collection, committed atomically with this one."""
        doc_id = uuid.uuid4().hex
        self.pending_inserts.append((collection, doc_id, copy.deepcopy(data)))
        return doc_id

    def merged(self) -> dict[str, Any] | None:
        """The document as it will look after commit (None if deleted)."""
        if self.pending_delete or self._snapshot is None:
            return None
        return {**self._snapshot, **(self.pending_update or {})}


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for primary store adapters."""

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Insert a document and return its generated id."""
        ...

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Read a document, None if missing."""
        ...

    @abstractmethod
    async def list_ids(self, collection: str) -> list[str]:
        """Ids of all documents in ``collection`` (oldest first)."""
        ...

    @abstractmethod
    async def list_documents(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """All (doc_id, data) pairs in ``collection`` (oldest first)."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; False if it did not exist."""
        ...

    @abstractmethod
    def transaction(
        self, collection: str, doc_id: str
    ) -> AbstractAsyncContextManager[DocumentTransaction]:
        """Open a single-document read-modify-write transaction.

        Example:
            >>> async with store.transaction("topic-queue", doc_id) as txn:
            ...     if txn.exists:
            ...         txn.update({"retry": txn.data().get("retry", 0) + 1})
        """
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


def create_document_store(config: "AppConfig") -> DocumentStore:
    """Create a document store adapter from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryDocumentStore
    from .sqlite_store import SqliteDocumentStore

    if config.store_backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            config.storage.path,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            wal_mode=config.storage.wal_mode,
        )
    elif config.store_backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")
