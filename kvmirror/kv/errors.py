"""
Error types for the KV client.

- KvError: Base exception
- KvHttpError: Non-2xx response from the KV API
- KvConnectionError: Network-level failure (no HTTP status)

Invariants:
    - All errors inherit from KvError
    - is_retryable is the single source of truth for the local retry loop
"""

from __future__ import annotations

RETRYABLE_STATUSES = frozenset({408, 429})


class KvError(Exception):
    """Base exception for KV operations.

    Attributes:
        message: Error message
        key: KV key involved, if any
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key

    @property
    def is_retryable(self) -> bool:
        """Whether retrying the same request may succeed."""
        return False


class KvHttpError(KvError):
    """The KV API answered with a non-success status.

    Attributes:
        status: HTTP status code
        retry_after: Server-provided Retry-After in seconds, if any
    """

    def __init__(
        self,
        message: str,
        status: int,
        key: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, key=key)
        self.status = status
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        return self.status in RETRYABLE_STATUSES or self.status >= 500


class KvConnectionError(KvError):
    """The request never produced an HTTP response."""

    @property
    def is_retryable(self) -> bool:
        return True
