"""
KV calls that never raise.

Mirror handlers must not fail because the KV store is unavailable. Each
safe operation tries the KV call once (the client already retries
transient errors locally) and, on failure, hands the operation to the
durable retry path by enqueueing a retry job with attempt 0.

Invariants:
    - Methods return True on success and False on failure; they never raise
      for KV or queue errors
    - A failed call produces exactly one retry job, published immediately
      (zero delay) once the dispatch queue is swept
"""

from __future__ import annotations

import logging
from typing import Any

from ..kv.base import KvStore
from ..retry.dispatch_queue import DelayedDispatchQueue
from ..retry.jobs import OP_DELETE, OP_PUT, OP_PUT_INDEX_META, RetryJob

logger = logging.getLogger(__name__)


class SafeOperations:
    """KV writes with fall-back to the retry queue.

    Example:
        >>> ops = SafeOperations(kv, queue, retry_topic="kv-mirror-retry")
        >>> meta = {"canonical": "posts:a:b"}
        >>> ok = await ops.put("posts:a:b", '{"title": "x"}', {"metadata": meta})
    """

    def __init__(
        self,
        kv: KvStore,
        queue: DelayedDispatchQueue,
        retry_topic: str = "kv-mirror-retry",
    ) -> None:
        self.kv = kv
        self.queue = queue
        self.retry_topic = retry_topic

    async def put(self, key: str, value: Any, opts: dict[str, Any] | None = None) -> bool:
        try:
            await self.kv.put(key, value, opts)
            return True
        except Exception as e:
            opts = dict(opts or {})
            metadata = opts.pop("metadata", None)
            await self._schedule_retry(
                RetryJob(op=OP_PUT, key=key, value=value, metadata=metadata, opts=opts or None), e
            )
            return False

    async def put_index_meta(
        self,
        key: str,
        metadata: dict[str, Any] | None,
        opts: dict[str, Any] | None = None,
    ) -> bool:
        try:
            await self.kv.put_index_meta(key, metadata, opts)
            return True
        except Exception as e:
            await self._schedule_retry(
                RetryJob(op=OP_PUT_INDEX_META, key=key, metadata=metadata, opts=opts), e
            )
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.kv.delete(key)
            return True
        except Exception as e:
            await self._schedule_retry(RetryJob(op=OP_DELETE, key=key), e)
            return False

    async def _schedule_retry(self, job: RetryJob, error: Exception) -> None:
        logger.warning(
            f"KV {job.op} failed, scheduling retry: {error}",
            extra={"op": job.op, "key": job.key},
        )
        try:
            await self.queue.enqueue(self.retry_topic, job.to_payload(), 0)
        except Exception as e:
            logger.error(
                f"Failed to enqueue KV retry job, operation dropped: {e}",
                extra={"op": job.op, "key": job.key},
                exc_info=True,
            )
