"""
In-memory KV store implementation for testing.

This module provides a KvStore backend that keeps everything in a dict:
- Unit tests of the mirror engine and retry worker
- Local development and the demo without a real KV namespace

Invariants:
    - All data is lost on process exit
    - Values are stored the way the HTTP client would send them
      (objects JSON-encoded, str/bytes as-is)
    - Injected failures are consumed in FIFO order per (op, key)

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the KvStore protocol
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .base import INDEX_PLACEHOLDER_VALUE
from .errors import KvError, KvHttpError

logger = logging.getLogger(__name__)


@dataclass
class KvEntry:
    """A stored value with its metadata."""

    value: str | bytes
    metadata: dict[str, Any] | None = None
    expiration: int | None = None
    expiration_ttl: int | None = None


@dataclass
class _InjectedFailure:
    op: str
    key: str | None
    remaining: int
    exc: Exception


@dataclass
class KvCall:
    """One recorded call (testing helper)."""

    op: str
    key: str
    ok: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


class InMemoryKvStore:
    """In-memory implementation of KvStore.

    Example:
        >>> kv = InMemoryKvStore()
        >>> await kv.put_index_meta("idx:a", {"canonical": "a"})
        >>> kv.metadata("idx:a")
        {'canonical': 'a'}
    """

    def __init__(self) -> None:
        self.entries: dict[str, KvEntry] = {}
        self.calls: list[KvCall] = []
        self._failures: list[_InjectedFailure] = []
        self._lock = asyncio.Lock()

    # Failure injection

    def fail_next(
        self,
        op: str,
        key: str | None = None,
        times: int = 1,
        exc: Exception | None = None,
    ) -> None:
        """Make the next ``times`` calls of ``op`` (optionally on ``key``) fail.

        Args:
            op: put, put_index_meta, get, delete or list_keys
            key: Restrict the failure to one key (None = any key)
            times: Number of calls to fail
            exc: Exception to raise (defaults to a retryable 503)
        """
        error = exc or KvHttpError("KV unavailable: 503", status=503, key=key)
        self._failures.append(_InjectedFailure(op=op, key=key, remaining=times, exc=error))

    def clear_failures(self) -> None:
        self._failures.clear()

    def _maybe_fail(self, op: str, key: str) -> None:
        for failure in self._failures:
            if failure.op == op and failure.key in (None, key) and failure.remaining > 0:
                failure.remaining -= 1
                if failure.remaining == 0:
                    self._failures.remove(failure)
                self.calls.append(KvCall(op=op, key=key, ok=False))
                raise failure.exc

    # KvStore protocol

    async def put(self, key: str, value: Any, opts: dict[str, Any] | None = None) -> None:
        self._maybe_fail("put", key)
        opts = opts or {}
        if not isinstance(value, (str, bytes)):
            value = json.dumps(value)
        async with self._lock:
            self.entries[key] = KvEntry(
                value=value,
                metadata=dict(opts["metadata"]) if opts.get("metadata") else None,
                expiration=opts.get("expiration"),
                expiration_ttl=opts.get("expiration_ttl"),
            )
        self.calls.append(KvCall(op="put", key=key, extra={"metadata": opts.get("metadata")}))

    async def put_index_meta(
        self,
        key: str,
        metadata: dict[str, Any] | None,
        opts: dict[str, Any] | None = None,
    ) -> None:
        self._maybe_fail("put_index_meta", key)
        meta = metadata if isinstance(metadata, dict) else {}
        async with self._lock:
            self.entries[key] = KvEntry(
                value=INDEX_PLACEHOLDER_VALUE,
                metadata=dict(meta),
                expiration=(opts or {}).get("expiration"),
                expiration_ttl=(opts or {}).get("expiration_ttl"),
            )
        self.calls.append(KvCall(op="put_index_meta", key=key, extra={"metadata": meta}))

    async def get(self, key: str, format: str = "text") -> Any:
        self._maybe_fail("get", key)
        self.calls.append(KvCall(op="get", key=key))
        entry = self.entries.get(key)
        if entry is None:
            return None
        raw = entry.value
        if format == "bytes":
            return raw if isinstance(raw, bytes) else raw.encode("utf-8")
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if format == "json":
            if not text.strip():
                return None
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.warning("Failed to parse JSON body", extra={"key": key})
                return None
        return text

    async def delete(self, key: str) -> None:
        self._maybe_fail("delete", key)
        async with self._lock:
            self.entries.pop(key, None)
        self.calls.append(KvCall(op="delete", key=key))

    async def list_keys(
        self,
        prefix: str = "",
        limit: int = 1000,
        cursor: str = "",
    ) -> dict[str, Any]:
        self._maybe_fail("list_keys", prefix)
        names = sorted(k for k in self.entries if k.startswith(prefix))
        try:
            start = int(cursor) if cursor else 0
        except ValueError:
            raise KvError(f"Invalid cursor: {cursor}")
        page = names[start:start + limit]
        next_cursor = str(start + limit) if start + limit < len(names) else ""
        return {
            "success": True,
            "result": [
                {"name": name, "metadata": self.entries[name].metadata} for name in page
            ],
            "result_info": {"count": len(page), "cursor": next_cursor},
        }

    # Testing helpers

    def keys(self) -> set[str]:
        """All stored keys."""
        return set(self.entries)

    def metadata(self, key: str) -> dict[str, Any] | None:
        entry = self.entries.get(key)
        return entry.metadata if entry else None

    def calls_for(self, op: str) -> list[str]:
        """Keys of successful calls of ``op``, in call order."""
        return [c.key for c in self.calls if c.op == op and c.ok]

    def reset_calls(self) -> None:
        self.calls.clear()
