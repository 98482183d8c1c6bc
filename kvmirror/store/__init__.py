"""
Primary document store adapters for kvmirror.

Only the queue and dead-letter collections live here; change events come
from the primary store's own change feed.

This module provides:
- DocumentStore: the protocol (add/get/list/delete + single-document transactions)
- SqliteDocumentStore: SQLite-backed adapter
- InMemoryDocumentStore: dict-backed adapter for tests
"""

from .base import (
    DocumentNotFoundError,
    DocumentStore,
    DocumentTransaction,
    StoreError,
    create_document_store,
)
from .memory import InMemoryDocumentStore
from .sqlite_store import SqliteDocumentStore

__all__ = [
    "DocumentStore",
    "DocumentTransaction",
    "StoreError",
    "DocumentNotFoundError",
    "create_document_store",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
