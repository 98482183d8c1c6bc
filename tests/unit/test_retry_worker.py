"""
Unit tests for the retry worker.

Tests cover:
- Replaying each supported operation
- Re-enqueueing with growing delays
- Dead-lettering once attempts are exhausted
- Invalid and unparseable messages
- Store failures while requeueing or dead-lettering
- Consuming the retry topic
"""

import asyncio

import pytest

from kvmirror.bus.base import BusMessage, MessagePos
from kvmirror.config import RetryConfig
from kvmirror.kv.base import INDEX_PLACEHOLDER_VALUE
from kvmirror.retry.errors import UnsupportedOperationError
from kvmirror.retry.jobs import RetryJob
from kvmirror.retry.worker import RetryOutcome, RetryWorker, run_operation


@pytest.fixture
def worker(kv, queue, bus, retry_config):
    return RetryWorker(kv, queue, bus, retry_config)


def queued(store):
    """Queue entries, oldest first."""
    return store.documents("topic-queue")


class TestRunOperation:
    """Tests for run_operation."""

    @pytest.mark.asyncio
    async def test_put_with_metadata(self, kv):
        job = RetryJob(op="put", key="posts:a", value='{"t":1}', metadata={"canonical": "posts:a"})
        await run_operation(kv, job)

        assert await kv.get("posts:a") == '{"t":1}'
        assert kv.metadata("posts:a") == {"canonical": "posts:a"}

    @pytest.mark.asyncio
    async def test_put_index_meta(self, kv):
        await run_operation(kv, RetryJob(op="putIndexMeta", key="idx:a", metadata={"x": "1"}))

        assert await kv.get("idx:a") == INDEX_PLACEHOLDER_VALUE
        assert kv.metadata("idx:a") == {"x": "1"}

    @pytest.mark.asyncio
    async def test_delete(self, kv):
        await kv.put("posts:a", "v")
        await run_operation(kv, RetryJob(op="del", key="posts:a"))
        assert kv.keys() == set()

    @pytest.mark.asyncio
    async def test_unsupported_op(self, kv):
        with pytest.raises(UnsupportedOperationError):
            await run_operation(kv, RetryJob(op="explode", key="k"))


class TestHandlePayload:
    """Tests for RetryWorker.handle_payload."""

    @pytest.mark.asyncio
    async def test_success(self, worker, kv, store):
        outcome = await worker.handle_payload(
            {"op": "putIndexMeta", "key": "idx:a", "metadata": {"canonical": "c"}, "attempt": 2}
        )

        assert outcome == RetryOutcome.SUCCEEDED
        assert kv.metadata("idx:a") == {"canonical": "c"}
        assert queued(store) == []

    @pytest.mark.asyncio
    async def test_failure_requeues_next_attempt(self, worker, kv, store, retry_config):
        kv.fail_next("put")

        outcome = await worker.handle_payload({"op": "put", "key": "k", "value": "v", "attempt": 0})

        assert outcome == RetryOutcome.REQUEUED
        [entry] = queued(store)
        assert entry["topic"] == retry_config.topic
        assert entry["minuteDelay"] == 1
        assert entry["payload"] == {"op": "put", "key": "k", "value": "v", "attempt": 1}

    @pytest.mark.asyncio
    async def test_delays_grow_monotonically(self, worker, kv, store):
        """Each failed attempt waits at least as long as the previous one."""
        kv.fail_next("delete", times=8)

        for attempt in range(8):
            await worker.handle_payload({"op": "del", "key": "k", "attempt": attempt})

        delays = [entry["minuteDelay"] for entry in queued(store)]
        attempts = [entry["payload"]["attempt"] for entry in queued(store)]
        assert attempts == [1, 2, 3, 4, 5, 6, 7, 8]
        assert delays == [1, 2, 4, 8, 16, 32, 60, 60]

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self, worker, kv, store, retry_config):
        kv.fail_next("delete")

        outcome = await worker.handle_payload({"op": "del", "key": "k", "attempt": 8})

        assert outcome == RetryOutcome.DEAD_LETTERED
        assert queued(store) == []
        [record] = await worker.dead_letters.list_records()
        assert record["topic"] == retry_config.topic
        assert record["payload"] == {"op": "del", "key": "k", "attempt": 9}
        assert record["error"] == "KV unavailable: 503"

    @pytest.mark.asyncio
    async def test_dead_lettered_exactly_once(self, kv, queue, bus, store):
        """A job failing forever is dead-lettered once, after max_attempts + 1."""
        worker = RetryWorker(kv, queue, bus, RetryConfig(max_attempts=3))
        kv.fail_next("delete", times=10)

        payload = {"op": "del", "key": "k", "attempt": 0}
        outcomes = []
        while True:
            outcome = await worker.handle_payload(payload)
            outcomes.append(outcome)
            if outcome != RetryOutcome.REQUEUED:
                break
            payload = queued(store)[-1]["payload"]
            await store.delete("topic-queue", (await store.list_ids("topic-queue"))[-1])

        assert outcomes == [RetryOutcome.REQUEUED] * 3 + [RetryOutcome.DEAD_LETTERED]
        assert store.count("kv-retry-dead") == 1
        assert store.documents("kv-retry-dead")[0]["payload"]["attempt"] == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, [], {"op": "put"}, {"key": "k", "attempt": 1}])
    async def test_invalid_payload_dropped(self, worker, store, payload):
        assert await worker.handle_payload(payload) == RetryOutcome.DROPPED
        assert queued(store) == []
        assert store.count("kv-retry-dead") == 0

    @pytest.mark.asyncio
    async def test_unsupported_op_is_retried(self, worker, store):
        """Unknown ops fail like any other KV error."""
        assert await worker.handle_payload({"op": "explode", "key": "k"}) == RetryOutcome.REQUEUED
        assert queued(store)[0]["payload"]["op"] == "explode"

    @pytest.mark.asyncio
    async def test_requeue_failure_is_lost(self, worker, kv, store):
        kv.fail_next("put")
        store.fail_next_add()

        outcome = await worker.handle_payload({"op": "put", "key": "k", "value": "v"})

        assert outcome == RetryOutcome.LOST
        assert queued(store) == []

    @pytest.mark.asyncio
    async def test_dead_letter_failure_is_lost(self, worker, kv, store):
        kv.fail_next("put")
        store.fail_next_add()

        outcome = await worker.handle_payload({"op": "put", "key": "k", "value": "v", "attempt": 8})

        assert outcome == RetryOutcome.LOST
        assert store.count("kv-retry-dead") == 0

    @pytest.mark.asyncio
    async def test_stats_count_outcomes(self, worker, kv):
        kv.fail_next("delete")
        await worker.handle_payload({"op": "del", "key": "k"})
        await worker.handle_payload({"op": "del", "key": "k"})
        await worker.handle_payload("garbage")

        stats = worker.stats
        assert stats["requeued"] == 1
        assert stats["succeeded"] == 1
        assert stats["dropped"] == 1
        assert stats["running"] is False


class TestConsume:
    """Tests for consuming the retry topic."""

    @pytest.mark.asyncio
    async def test_unparseable_message_dropped(self, worker):
        message = BusMessage(
            data=b"{not json",
            position=MessagePos(topic="kv-mirror-retry", partition=0, offset=0, timestamp_ms=0),
        )
        assert await worker.handle_message(message) == RetryOutcome.DROPPED

    @pytest.mark.asyncio
    async def test_start_consumes_and_commits(self, worker, kv, bus, retry_config):
        await bus.publish(retry_config.topic, {"op": "put", "key": "a", "value": "1"})
        await bus.publish(retry_config.topic, {"op": "put", "key": "b", "value": "2"})

        task = asyncio.create_task(worker.start())
        for _ in range(100):
            if kv.keys() == {"a", "b"}:
                break
            await asyncio.sleep(0.01)

        await worker.stop()
        bus.unsubscribe(retry_config.topic, retry_config.group_id)
        await asyncio.wait_for(task, timeout=2.0)

        assert kv.keys() == {"a", "b"}
        assert bus.committed_offset(retry_config.topic, retry_config.group_id) == 2
        assert worker.stats["succeeded"] == 2
