"""
KV store access for kvmirror.

This module provides:
- KvClient: HTTP client for the remote KV API with local retry/backoff
- InMemoryKvStore: dict-backed store for tests and local development
- KvStore: the protocol both implement

Invariants:
    - Transient failures (408, 429, 5xx, network) are retried locally
    - Permanent failures surface immediately as KvHttpError
    - A missing key reads as None
"""

from .base import INDEX_PLACEHOLDER_VALUE, KvStore
from .client import KvClient, parse_retry_after
from .errors import KvConnectionError, KvError, KvHttpError
from .memory import InMemoryKvStore

__all__ = [
    # Protocol
    "KvStore",
    "INDEX_PLACEHOLDER_VALUE",
    # Errors
    "KvError",
    "KvHttpError",
    "KvConnectionError",
    # Implementations
    "KvClient",
    "InMemoryKvStore",
    "parse_retry_after",
]
