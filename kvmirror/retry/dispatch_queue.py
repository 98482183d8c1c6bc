"""
Delayed dispatch queue backed by the primary document store.

The queue holds messages that must be published to a topic after a delay.
Mirror handlers enqueue failed KV operations here, and the retry worker
re-enqueues jobs with exponential delays. A periodic sweep publishes every
due entry and removes it.

Entry format (collection ``topic-queue``):
    {
        "topic": "kv-mirror-retry",
        "payload": {...},
        "minuteDelay": 0,
        "retry": 0,
        "timestamp": 1700000000000,  # enqueue time, Unix ms
        "claimedUntil": 0            # set by a sweep while it publishes, Unix ms
    }

Invariants:
    - Store transactions are never held across a publish. A sweep claims a
      due entry in one short transaction, publishes, then deletes or
      reschedules it in a second one
    - A live claim makes other sweeps skip the entry. A claim lasts
      timeout_seconds, so an entry claimed by a crashed sweep is retried
    - Delivery is at-least-once: a crash between publish and delete, or a
      publish outliving its claim, publishes the entry again
    - An entry is due when timestamp or minuteDelay is unset, when
      now >= timestamp + minuteDelay minutes, or when timestamp lies in the
      future (clock skew)
    - A failed publish bumps ``retry`` and reschedules with the backoff
      schedule; past max_publish_retries the entry is dead-lettered
    - Malformed due entries are dead-lettered, never dropped silently
    - One failing entry never aborts the sweep

How to change safely:
    - The entry field names are shared with external producers; keep them
    - Never await the bus inside a store transaction
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..bus.base import TopicBus
from ..config import DispatchQueueConfig
from ..store.base import DocumentStore, DocumentTransaction
from .dead_letter import DeadLetterStore

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
CLAIM_FIELD = "claimedUntil"


class EntryOutcome(Enum):
    """What a sweep did with one queue entry."""

    PUBLISHED = "published"
    RESCHEDULED = "rescheduled"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"


@dataclass
class SweepResult:
    """Counters for one sweep of the queue."""

    published: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    errors: int = 0

    def record(self, outcome: EntryOutcome) -> None:
        name = outcome.value
        setattr(self, name, getattr(self, name) + 1)

    @property
    def total(self) -> int:
        return self.published + self.rescheduled + self.dead_lettered + self.skipped + self.errors


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def is_due(entry: dict[str, Any], now_ms: int) -> bool:
    """Whether a queue entry should be published at ``now_ms``."""
    timestamp = _as_number(entry.get("timestamp"))
    delay = _as_number(entry.get("minuteDelay"))
    if not timestamp or not delay:
        return True
    if timestamp > now_ms:
        return True
    return now_ms >= timestamp + delay * MINUTE_MS


class DelayedDispatchQueue:
    """Store-backed queue of delayed topic publishes.

    Example:
        >>> queue = DelayedDispatchQueue(store, bus, DispatchQueueConfig())
        >>> await queue.enqueue("kv-mirror-retry", {"op": "del", "key": "k", "attempt": 0})
        >>> result = await queue.sweep()
    """

    def __init__(
        self,
        store: DocumentStore,
        bus: TopicBus,
        config: DispatchQueueConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the queue.

        Args:
            store: Primary document store holding the queue collection
            bus: Topic bus entries are published to
            config: Queue configuration
            clock: Returns the current time in seconds
        """
        self.store = store
        self.bus = bus
        self.config = config or DispatchQueueConfig()
        self.dead_letters = DeadLetterStore(store, self.config.dead_letter_collection)
        self._clock = clock

        self._running = False
        self._stop_event = asyncio.Event()
        self._sweep_count = 0
        self._last_result: SweepResult | None = None

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def backoff_minutes(self, retry: int) -> int:
        """Delay after the ``retry``-th failed publish (1-based)."""
        schedule = self.config.backoff_minutes
        return schedule[min(max(retry, 1), len(schedule)) - 1]

    async def enqueue(self, topic: str, payload: dict[str, Any], minute_delay: int = 0) -> str:
        """Insert an entry and return its document id.

        Store errors propagate to the caller.
        """
        entry = {
            "topic": topic,
            "payload": payload,
            "minuteDelay": minute_delay,
            "retry": 0,
            "timestamp": self.now_ms(),
        }
        doc_id = await self.store.add(self.config.collection, entry)
        logger.debug(
            "Enqueued delayed message",
            extra={"topic": topic, "doc_id": doc_id, "minute_delay": minute_delay},
        )
        return doc_id

    async def sweep(self) -> SweepResult:
        """Publish every due entry once."""
        result = SweepResult()
        now_ms = self.now_ms()

        for doc_id in await self.store.list_ids(self.config.collection):
            try:
                outcome = await self._process_entry(doc_id, now_ms)
            except Exception as e:
                result.errors += 1
                logger.error(
                    f"Failed to process queue entry: {e}",
                    extra={"doc_id": doc_id},
                    exc_info=True,
                )
                continue
            result.record(outcome)

        self._sweep_count += 1
        self._last_result = result
        if result.total:
            logger.info(
                "Dispatch queue sweep complete",
                extra={
                    "published": result.published,
                    "rescheduled": result.rescheduled,
                    "dead_lettered": result.dead_lettered,
                    "skipped": result.skipped,
                    "errors": result.errors,
                },
            )
        return result

    async def _process_entry(self, doc_id: str, now_ms: int) -> EntryOutcome:
        async with self.store.transaction(self.config.collection, doc_id) as txn:
            outcome = self._claim(txn, doc_id, now_ms)
            if outcome is not None:
                return outcome
            entry = txn.data()

        topic = entry["topic"]
        try:
            await self.bus.publish(topic, entry["payload"])
        except Exception as e:
            async with self.store.transaction(self.config.collection, doc_id) as txn:
                if not txn.exists:
                    logger.warning(
                        f"Queue publish failed for a removed entry: {e}",
                        extra={"doc_id": doc_id, "topic": topic},
                    )
                    return EntryOutcome.SKIPPED
                return self._handle_publish_failure(txn, doc_id, txn.data(), e)

        async with self.store.transaction(self.config.collection, doc_id) as txn:
            if txn.exists:
                txn.delete()
        logger.debug("Published queued message", extra={"doc_id": doc_id, "topic": topic})
        return EntryOutcome.PUBLISHED

    def _claim(self, txn: DocumentTransaction, doc_id: str, now_ms: int) -> EntryOutcome | None:
        """Claim a due entry for publishing, or return what to do instead."""
        if not txn.exists:
            return EntryOutcome.SKIPPED

        entry = txn.data()
        if not is_due(entry, now_ms):
            return EntryOutcome.SKIPPED

        current_ms = self.now_ms()
        if (_as_number(entry.get(CLAIM_FIELD)) or 0) > current_ms:
            return EntryOutcome.SKIPPED

        topic = entry.get("topic")
        payload = entry.get("payload")
        valid_topic = isinstance(topic, str) and bool(topic.strip())
        if not valid_topic or not isinstance(payload, dict) or not payload:
            logger.warning("Dead-lettering malformed queue entry", extra={"doc_id": doc_id})
            self.dead_letters.stage(
                txn, topic if isinstance(topic, str) else "", payload, "Malformed queue entry"
            )
            txn.delete()
            return EntryOutcome.DEAD_LETTERED

        txn.update({CLAIM_FIELD: current_ms + int(self.config.timeout_seconds * 1000)})
        return None

    def _handle_publish_failure(
        self,
        txn: DocumentTransaction,
        doc_id: str,
        entry: dict[str, Any],
        error: Exception,
    ) -> EntryOutcome:
        retry = int(_as_number(entry.get("retry")) or 0) + 1

        if retry <= self.config.max_publish_retries:
            delay = self.backoff_minutes(retry)
            txn.update({"retry": retry, "minuteDelay": delay, CLAIM_FIELD: 0})
            logger.warning(
                f"Queue publish failed, rescheduling: {error}",
                extra={
                    "doc_id": doc_id,
                    "topic": entry["topic"],
                    "retry": retry,
                    "minute_delay": delay,
                },
            )
            return EntryOutcome.RESCHEDULED

        logger.error(
            f"Queue publish failed {retry} times, giving up: {error}",
            extra={"doc_id": doc_id, "topic": entry["topic"]},
        )
        self.dead_letters.stage(txn, entry["topic"], entry["payload"], error)
        txn.delete()
        return EntryOutcome.DEAD_LETTERED

    async def start(self) -> None:
        """Sweep every ``sweep_interval_seconds`` until stop() is called."""
        if self._running:
            logger.warning("Dispatch queue already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info(
            "Starting dispatch queue sweeper",
            extra={
                "collection": self.config.collection,
                "interval_seconds": self.config.sweep_interval_seconds,
            },
        )

        try:
            while self._running:
                try:
                    await asyncio.wait_for(self.sweep(), timeout=self.config.timeout_seconds)
                except asyncio.TimeoutError:
                    logger.error(
                        "Dispatch queue sweep timed out",
                        extra={"timeout_seconds": self.config.timeout_seconds},
                    )
                except Exception as e:
                    logger.error(f"Dispatch queue sweep failed: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self.config.sweep_interval_seconds
                    )
                except asyncio.TimeoutError:
                    pass

        except asyncio.CancelledError:
            logger.info("Dispatch queue sweeper cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the sweep loop after the current sweep."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping dispatch queue sweeper")

    @property
    def stats(self) -> dict[str, Any]:
        last = self._last_result
        return {
            "running": self._running,
            "sweep_count": self._sweep_count,
            "last_sweep": vars(last).copy() if last else None,
        }
