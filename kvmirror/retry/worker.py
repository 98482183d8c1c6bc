"""
Retry worker: the durable slow path for failed KV operations.

The worker consumes retry jobs from the retry topic and replays each one
against the KV store. A job that fails again is re-enqueued in the delayed
dispatch queue with an exponentially growing delay; once ``max_attempts``
is exceeded it is written to the dead-letter collection.

Invariants:
    - attempt only ever increases, and so does the scheduled delay (up to
      the configured cap)
    - A job is dead-lettered at most once, after attempt max_attempts + 1
    - Invalid payloads are logged and dropped; they are never re-enqueued
    - Every consumed message is committed after it has been handled

How to change safely:
    - New ops must be added to jobs.SUPPORTED_OPS and run_operation()
    - The payload format is shared with the dispatch queue; keep it stable
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

from ..bus.base import BusMessage, BusSerializationError, TopicBus
from ..config import RetryConfig
from ..kv.base import KvStore
from .dead_letter import DeadLetterStore
from .dispatch_queue import DelayedDispatchQueue
from .errors import (
    DeadLetterWriteError,
    InvalidRetryPayload,
    RetryRequeueError,
    UnsupportedOperationError,
)
from .jobs import (
    OP_DELETE,
    OP_PUT,
    OP_PUT_INDEX_META,
    RetryJob,
    compute_retry_delay_minutes,
)

logger = logging.getLogger(__name__)


class RetryOutcome(Enum):
    """Result of handling one retry message."""

    SUCCEEDED = "succeeded"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    DROPPED = "dropped"
    LOST = "lost"


async def run_operation(kv: KvStore, job: RetryJob) -> None:
    """Execute a retry job against the KV store.

    Raises:
        UnsupportedOperationError: If ``job.op`` is unknown
        KvError: If the KV call fails
    """
    opts = dict(job.opts or {})
    if job.op == OP_PUT:
        if job.metadata is not None:
            opts["metadata"] = job.metadata
        await kv.put(job.key, job.value, opts or None)
    elif job.op == OP_PUT_INDEX_META:
        await kv.put_index_meta(job.key, job.metadata, opts or None)
    elif job.op == OP_DELETE:
        await kv.delete(job.key)
    else:
        raise UnsupportedOperationError(job.op)


class RetryWorker:
    """Consumes the retry topic and replays KV operations.

    Example:
        >>> worker = RetryWorker(kv, queue, bus, RetryConfig())
        >>> asyncio.create_task(worker.start())
    """

    def __init__(
        self,
        kv: KvStore,
        queue: DelayedDispatchQueue,
        bus: TopicBus,
        config: RetryConfig | None = None,
        dead_letters: DeadLetterStore | None = None,
    ) -> None:
        self.kv = kv
        self.queue = queue
        self.bus = bus
        self.config = config or RetryConfig()
        self.dead_letters = dead_letters or queue.dead_letters

        self._running = False
        self._counts: dict[RetryOutcome, int] = {outcome: 0 for outcome in RetryOutcome}

    async def handle_message(self, message: BusMessage) -> RetryOutcome:
        """Decode and handle one bus message."""
        try:
            payload = message.json()
        except BusSerializationError as e:
            logger.error(
                f"Dropping unparseable retry message: {e}",
                extra={"position": str(message.position)},
            )
            return self._count(RetryOutcome.DROPPED)
        return await self.handle_payload(payload)

    async def handle_payload(self, payload: Any) -> RetryOutcome:
        """Run one retry job, then requeue or dead-letter it on failure."""
        try:
            job = RetryJob.from_payload(payload)
        except InvalidRetryPayload as e:
            logger.error(f"Dropping invalid retry payload: {e}", extra={"payload": repr(payload)})
            return self._count(RetryOutcome.DROPPED)

        try:
            await run_operation(self.kv, job)
        except Exception as e:
            return self._count(await self._handle_failure(job, e))

        logger.info(
            "KV retry succeeded",
            extra={"op": job.op, "key": job.key, "attempt": job.attempt},
        )
        return self._count(RetryOutcome.SUCCEEDED)

    async def _handle_failure(self, job: RetryJob, error: Exception) -> RetryOutcome:
        next_job = job.next_attempt()

        if next_job.attempt > self.config.max_attempts:
            try:
                await self.dead_letters.record(self.config.topic, next_job.to_payload(), error)
            except DeadLetterWriteError as e:
                logger.error(
                    str(e),
                    extra={"op": job.op, "key": job.key, "attempt": next_job.attempt},
                    exc_info=True,
                )
                return RetryOutcome.LOST
            logger.error(
                f"KV retry exhausted, dead-lettered: {error}",
                extra={"op": job.op, "key": job.key, "attempt": next_job.attempt},
            )
            return RetryOutcome.DEAD_LETTERED

        delay = compute_retry_delay_minutes(
            next_job.attempt,
            self.config.base_delay_minutes,
            self.config.max_delay_minutes,
        )
        try:
            await self._requeue(next_job, delay)
        except RetryRequeueError as e:
            logger.error(
                str(e),
                extra={"op": job.op, "key": job.key, "attempt": next_job.attempt},
                exc_info=True,
            )
            return RetryOutcome.LOST

        logger.warning(
            f"KV retry failed, requeued: {error}",
            extra={
                "op": job.op,
                "key": job.key,
                "attempt": next_job.attempt,
                "minute_delay": delay,
            },
        )
        return RetryOutcome.REQUEUED

    async def _requeue(self, job: RetryJob, delay_minutes: int) -> None:
        try:
            await self.queue.enqueue(self.config.topic, job.to_payload(), delay_minutes)
        except Exception as e:
            raise RetryRequeueError(
                f"Failed to requeue KV retry job: {e}", key=job.key, attempt=job.attempt
            ) from e

    def _count(self, outcome: RetryOutcome) -> RetryOutcome:
        self._counts[outcome] += 1
        return outcome

    async def start(self) -> None:
        """Consume the retry topic until stop() is called."""
        if self._running:
            logger.warning("Retry worker already running")
            return

        self._running = True
        logger.info(
            "Starting retry worker",
            extra={"topic": self.config.topic, "group_id": self.config.group_id},
        )

        try:
            async for message in self.bus.subscribe(self.config.topic, self.config.group_id):
                if not self._running:
                    break

                try:
                    await self.handle_message(message)
                except Exception as e:
                    logger.error(f"Retry worker error: {e}", exc_info=True)

                await self.bus.commit(message)

        except asyncio.CancelledError:
            logger.info("Retry worker cancelled")
        except Exception as e:
            logger.error(f"Retry worker error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop consuming after the current message."""
        self._running = False
        logger.info("Stopping retry worker")

    @property
    def stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "running": self._running,
            **{outcome.value: count for outcome, count in self._counts.items()},
        }
