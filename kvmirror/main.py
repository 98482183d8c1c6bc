"""
kvmirror service - Main entry point.

This module runs the long-lived parts of the mirror pipeline:
- Dispatch queue sweeper (queue -> bus)
- Retry worker (bus -> KV store, requeue or dead-letter)

Mirror handlers are registered on ``service.router`` by the embedding
application, which feeds change events in via ``service.handle_change()``.

Usage:
    python -m kvmirror.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The bus is connected before the worker or sweeper starts
    - Shutdown stops the background loops before closing the bus, store
      and HTTP client

How to change safely:
    - Add new background loops to start() and stop() together
    - Test the shutdown sequence with in-flight retries
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Iterable
from typing import Any

import json_log_formatter

from .bus import TopicBus, create_topic_bus
from .config import AppConfig
from .kv import KvClient, KvStore
from .mirror import MirrorResult, MirrorRouter, MirrorSpec, SafeOperations
from .retry import DelayedDispatchQueue, RetryWorker
from .store import DocumentStore, create_document_store

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    """Configure root logging from the observability settings."""
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Service:
    """Wires the pipeline components together and owns their lifecycle.

    Attributes:
        config: Service configuration
        bus: Topic bus carrying retry jobs
        store: Primary store adapter (queue and dead-letter collections)
        kv: KV store client
        queue: Delayed dispatch queue
        router: Mirror handlers by document pattern
        worker: Retry worker

    Example:
        >>> service = Service(config, specs=[posts_spec])
        >>> asyncio.create_task(service.start())
        >>> await service.handle_change("organizations/o/sites/s/published_posts/p", None, doc)
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        specs: Iterable[MirrorSpec] = (),
        kv: KvStore | None = None,
        bus: TopicBus | None = None,
        store: DocumentStore | None = None,
    ) -> None:
        """Build all components; nothing is connected until start().

        Args:
            config: Configuration (loaded from env if not provided)
            specs: Mirror definitions to register
            kv: KV store (a KvClient is built from config if not provided)
            bus: Topic bus (built from config if not provided)
            store: Document store (built from config if not provided)
        """
        self.config = config or AppConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.bus = bus or create_topic_bus(self.config)
        self.store = store or create_document_store(self.config)
        self.kv = kv or KvClient(self.config.kv)

        self.queue = DelayedDispatchQueue(self.store, self.bus, self.config.queue)
        self.safe_ops = SafeOperations(self.kv, self.queue, retry_topic=self.config.retry.topic)
        self.router = MirrorRouter(self.kv, self.safe_ops, self.config.mirror)
        self.worker = RetryWorker(self.kv, self.queue, self.bus, self.config.retry)

        for spec in specs:
            self.router.register(spec)

        self._tasks: list[asyncio.Task] = []

    async def handle_change(
        self,
        path: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> list[MirrorResult]:
        """Mirror one document write."""
        return await self.router.dispatch(path, before, after)

    async def start(self) -> None:
        """Start background loops and block until shutdown is requested."""
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting kvmirror service")
        self.config.log_config()

        try:
            await self.bus.connect()
            logger.info("Topic bus connected")

            self._tasks.append(asyncio.create_task(self.queue.start()))
            self._tasks.append(asyncio.create_task(self.worker.start()))

            self._running = True
            logger.info(
                "kvmirror service started",
                extra={"mirrors": [h.spec.document_pattern for h in self.router.handlers]},
            )

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Service startup failed: {e}", exc_info=True)
            await self._close_resources()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if not self._running:
            return

        logger.info("Stopping kvmirror service")

        await self.queue.stop()
        await self.worker.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self._close_resources()

        self._running = False
        logger.info("kvmirror service stopped")

    async def _close_resources(self) -> None:
        await self.bus.close()
        await self.store.close()
        if isinstance(self.kv, KvClient):
            await self.kv.close()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "queue": self.queue.stats,
            "worker": self.worker.stats,
        }


def main() -> None:
    """Main entry point."""
    try:
        config = AppConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    service = Service(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
