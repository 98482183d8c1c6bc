"""
Retry job payloads and dead-letter records.

A retry job describes one KV operation that failed on the fast path. It
travels as a JSON payload through the delayed dispatch queue and the topic
bus, so every field must survive a JSON round-trip.

Payload format:
    {
        "op": "put" | "putIndexMeta" | "del",
        "key": "<kv key>",
        "value": <str or JSON value>,          # put only
        "valueEncoding": "base64",             # only when value was bytes
        "metadata": {...},                     # put / putIndexMeta
        "opts": {...},                         # expiration options
        "attempt": 0
    }

Invariants:
    - attempt is a non-negative integer and only ever increases
    - Delays are whole minutes and never exceed the configured maximum
"""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import InvalidRetryPayload

OP_PUT = "put"
OP_PUT_INDEX_META = "putIndexMeta"
OP_DELETE = "del"

SUPPORTED_OPS = frozenset({OP_PUT, OP_PUT_INDEX_META, OP_DELETE})

ERROR_MESSAGE_LIMIT = 1000


def _to_non_negative_int(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 0
    return number if number > 0 else 0


@dataclass(frozen=True)
class RetryJob:
    """One KV operation waiting to be retried.

    ``op`` is not validated here; the worker rejects unknown operations
    when it executes them, so they count as failed attempts.
    """

    op: str
    key: str
    value: Any = None
    metadata: dict[str, Any] | None = None
    opts: dict[str, Any] | None = None
    attempt: int = 0

    def next_attempt(self) -> RetryJob:
        return replace(self, attempt=self.attempt + 1)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"op": self.op, "key": self.key}
        if isinstance(self.value, (bytes, bytearray)):
            payload["value"] = base64.b64encode(bytes(self.value)).decode("ascii")
            payload["valueEncoding"] = "base64"
        elif self.value is not None:
            payload["value"] = self.value
        if self.metadata is not None:
            payload["metadata"] = self.metadata
        if self.opts:
            payload["opts"] = self.opts
        payload["attempt"] = self.attempt
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> RetryJob:
        """Parse a decoded message payload.

        Raises:
            InvalidRetryPayload: If the payload is not a mapping or lacks op/key
        """
        if not isinstance(payload, dict):
            raise InvalidRetryPayload("Retry payload is not an object", payload)

        op = payload.get("op")
        key = payload.get("key")
        if not isinstance(op, str) or not op or not isinstance(key, str) or not key:
            raise InvalidRetryPayload("Retry payload is missing op or key", payload)

        value = payload.get("value")
        if payload.get("valueEncoding") == "base64" and isinstance(value, str):
            try:
                value = base64.b64decode(value)
            except ValueError as e:
                raise InvalidRetryPayload(f"Invalid base64 value: {e}", payload) from e

        metadata = payload.get("metadata")
        opts = payload.get("opts")
        return cls(
            op=op,
            key=key,
            value=value,
            metadata=metadata if isinstance(metadata, dict) else None,
            opts=opts if isinstance(opts, dict) else None,
            attempt=_to_non_negative_int(payload.get("attempt")),
        )


def compute_retry_delay_minutes(attempt: int, base_minutes: int, max_minutes: int) -> int:
    """Delay before retry number ``attempt`` (1-based).

    Doubles from ``base_minutes`` and is capped at ``max_minutes``:
    with base 1 and max 60 the schedule is 1, 2, 4, 8, 16, 32, 60, 60.
    """
    exponent = max(0, attempt - 1)
    return min(max_minutes, base_minutes * (2**exponent))


def truncate_error(error: BaseException | str, limit: int = ERROR_MESSAGE_LIMIT) -> str:
    text = str(error) or type(error).__name__
    return text[:limit]


@dataclass(frozen=True)
class DeadLetterRecord:
    """Terminal record of a message that will not be retried again."""

    topic: str
    payload: Any
    error: str
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "error": self.error,
            "timestamp": self.timestamp,
        }
