"""
Bounded fan-out for index writes and deletes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_with_concurrency(
    items: Iterable[T],
    limit: int,
    worker: Callable[[T], Awaitable[R]],
) -> list[R | BaseException]:
    """Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    Completion order is not guaranteed, but the returned list lines up with
    ``items``: each slot holds the worker's result, or the exception it
    raised. Exceptions are logged and never propagated.

    Args:
        items: Inputs to process
        limit: Maximum concurrent workers (values below 1 are treated as 1)
        worker: Coroutine function applied to each item

    Returns:
        Per-item results in input order
    """
    items = list(items)
    if not items:
        return []

    semaphore = asyncio.Semaphore(max(1, int(limit)))

    async def run_one(item: T) -> R:
        async with semaphore:
            return await worker(item)

    results = await asyncio.gather(*(run_one(item) for item in items), return_exceptions=True)

    for item, result in zip(items, results):
        if isinstance(result, BaseException):
            logger.error(
                f"Concurrent task failed: {result}",
                extra={"item": repr(item)},
                exc_info=result,
            )
    return results
