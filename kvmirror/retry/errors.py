"""
Exceptions raised by the durable retry path.
"""

from __future__ import annotations

from typing import Any


class RetryError(Exception):
    """Base exception for the retry subsystem."""

    pass


class InvalidRetryPayload(RetryError):
    """A retry message could not be parsed into a job."""

    def __init__(self, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.payload = payload


class UnsupportedOperationError(RetryError):
    """A retry job names an operation the worker cannot execute."""

    def __init__(self, op: str) -> None:
        super().__init__(f"Unsupported KV retry op: {op!r}")
        self.op = op


class RetryRequeueError(RetryError):
    """Writing the next attempt back into the dispatch queue failed.

    The job is lost once this is raised; it is logged at ERROR level.
    """

    def __init__(self, message: str, key: str | None = None, attempt: int | None = None) -> None:
        super().__init__(message)
        self.key = key
        self.attempt = attempt


class DeadLetterWriteError(RetryError):
    """Writing a dead-letter record failed."""

    def __init__(self, message: str, topic: str | None = None) -> None:
        super().__init__(message)
        self.topic = topic
