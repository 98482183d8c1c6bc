"""
Protocol for KV store access.

Both the HTTP client and the in-memory store implement KvStore, so the
mirror engine and the retry worker can run against either.

Invariants:
    - get() returns None for a missing key, never raises for 404
    - delete() of a missing key succeeds
    - put_index_meta() stores a placeholder value with the given metadata
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

INDEX_PLACEHOLDER_VALUE = "1"


@runtime_checkable
class KvStore(Protocol):
    """Minimal KV surface used by the mirror and the retry worker."""

    async def put(self, key: str, value: Any, opts: dict[str, Any] | None = None) -> None:
        """Write a value.

        Args:
            key: KV key
            value: str, bytes, or JSON-serializable object
            opts: Optional ``metadata``, ``expiration``, ``expiration_ttl``
        """
        ...

    async def put_index_meta(
        self,
        key: str,
        metadata: dict[str, Any] | None,
        opts: dict[str, Any] | None = None,
    ) -> None:
        """Write a placeholder value carrying only metadata."""
        ...

    async def get(self, key: str, format: str = "text") -> Any:
        """Read a value (``text``, ``json`` or ``bytes``); None if missing."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a key."""
        ...

    async def list_keys(
        self,
        prefix: str = "",
        limit: int = 1000,
        cursor: str = "",
    ) -> dict[str, Any]:
        """List one page of keys."""
        ...
