"""
SQLite document store for the queue and dead-letter collections.

This module stores schemaless JSON documents grouped by collection in one
SQLite database. It backs the delayed dispatch queue when the service runs
outside a managed document database.

Invariants:
    - One row per (collection, doc_id)
    - Transactions use BEGIN IMMEDIATE, so two sweeps cannot act on the same
      document concurrently
    - Documents are stored as JSON text

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all read-modify-write sequences

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - data_json TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

from .base import DocumentTransaction

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """SQLite-backed DocumentStore.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode and busy timeouts.
        Within one event loop, operations are serialized by an asyncio lock
        so a coroutine never blocks the loop on a transaction held by another.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/kvmirror/queue.db")
        >>> doc_id = await store.add("topic-queue", {"topic": "t", "payload": {}})
    """

    def __init__(
        self,
        path: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            path: SQLite database file
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True

            yield conn
        finally:
            conn.close()

    @asynccontextmanager
    async def _locked_connection(self) -> AsyncIterator[sqlite3.Connection]:
        async with self._lock:
            with self._get_connection() as conn:
                yield conn

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_created
                ON documents(collection, created_at);
        """)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        now = int(time.time() * 1000)

        async with self._locked_connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (collection, doc_id, data_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (collection, doc_id, json.dumps(data), now, now),
            )

        logger.debug("Added document", extra={"collection": collection, "doc_id": doc_id})
        return doc_id

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        async with self._locked_connection() as conn:
            row = conn.execute(
                "SELECT data_json FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
        return json.loads(row["data_json"]) if row else None

    async def list_ids(self, collection: str) -> list[str]:
        async with self._locked_connection() as conn:
            rows = conn.execute(
                "SELECT doc_id FROM documents WHERE collection = ? ORDER BY created_at, doc_id",
                (collection,),
            ).fetchall()
        return [row["doc_id"] for row in rows]

    async def list_documents(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """All (doc_id, data) pairs in ``collection``, oldest first."""
        async with self._locked_connection() as conn:
            rows = conn.execute(
                """
                SELECT doc_id, data_json FROM documents
                WHERE collection = ? ORDER BY created_at, doc_id
                """,
                (collection,),
            ).fetchall()
        return [(row["doc_id"], json.loads(row["data_json"])) for row in rows]

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._locked_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            return cursor.rowcount > 0

    @asynccontextmanager
    async def transaction(self, collection: str, doc_id: str) -> AsyncIterator[DocumentTransaction]:
        async with self._locked_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT data_json FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                ).fetchone()
                txn = DocumentTransaction(
                    collection, doc_id, json.loads(row["data_json"]) if row else None
                )

                yield txn

                if txn.pending_delete:
                    conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, doc_id),
                    )
                elif txn.pending_update is not None:
                    conn.execute(
                        """
                        UPDATE documents SET data_json = ?, updated_at = ?
                        WHERE collection = ? AND doc_id = ?
                        """,
                        (json.dumps(txn.merged()), int(time.time() * 1000), collection, doc_id),
                    )

                now = int(time.time() * 1000)
                for other, new_id, data in txn.pending_inserts:
                    conn.execute(
                        """
                        INSERT INTO documents
                            (collection, doc_id, data_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (other, new_id, json.dumps(data), now, now),
                    )

                conn.execute("COMMIT")

            except BaseException:
                conn.execute("ROLLBACK")
                raise

    async def close(self) -> None:
        """Nothing to release; connections are per-operation."""
        return None
