"""
Durable retry path for failed KV operations.

This module provides:
- DelayedDispatchQueue: store-backed queue of delayed topic publishes
- RetryWorker: replays retry jobs from the bus against the KV store
- DeadLetterStore: terminal records for work that was given up on
- RetryJob: the job payload shared by all of the above

Flow:
    mirror failure -> enqueue -> sweep -> bus -> worker -> KV
    worker failure -> requeue with a doubled delay, or dead-letter once
    attempts are exhausted
"""

from .dead_letter import DeadLetterStore
from .dispatch_queue import DelayedDispatchQueue, EntryOutcome, SweepResult, is_due
from .errors import (
    DeadLetterWriteError,
    InvalidRetryPayload,
    RetryError,
    RetryRequeueError,
    UnsupportedOperationError,
)
from .jobs import (
    OP_DELETE,
    OP_PUT,
    OP_PUT_INDEX_META,
    SUPPORTED_OPS,
    DeadLetterRecord,
    RetryJob,
    compute_retry_delay_minutes,
)
from .worker import RetryOutcome, RetryWorker, run_operation

__all__ = [
    # Queue
    "DelayedDispatchQueue",
    "SweepResult",
    "EntryOutcome",
    "is_due",
    # Worker
    "RetryWorker",
    "RetryOutcome",
    "run_operation",
    # Jobs
    "RetryJob",
    "DeadLetterRecord",
    "DeadLetterStore",
    "compute_retry_delay_minutes",
    "OP_PUT",
    "OP_PUT_INDEX_META",
    "OP_DELETE",
    "SUPPORTED_OPS",
    # Errors
    "RetryError",
    "InvalidRetryPayload",
    "UnsupportedOperationError",
    "RetryRequeueError",
    "DeadLetterWriteError",
]
