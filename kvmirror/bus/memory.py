"""
In-memory topic bus implementation for testing.

This module provides a simple in-memory bus for:
- Unit and integration tests
- Local development and the demo without a broker

Invariants:
    - All data is lost on process exit
    - Each consumer group has its own committed offset per topic
    - Uncommitted messages are redelivered to the next subscription

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with TopicBus protocol
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from .base import (
    BusConnectionError,
    BusError,
    BusMessage,
    MessagePos,
    encode_payload,
)

logger = logging.getLogger(__name__)


class InMemoryTopicBus:
    """In-memory implementation of TopicBus for testing.

    Every topic is a single partition. Messages are kept after commit so
    tests can inspect everything that was published.

    Example:
        >>> bus = InMemoryTopicBus()
        >>> await bus.connect()
        >>> await bus.publish("test", {"op": "del", "key": "k"})
        >>> async for message in bus.subscribe("test", "group1"):
        ...     print(message.json())
    """

    def __init__(self) -> None:
        self._topics: Dict[str, List[BusMessage]] = defaultdict(list)
        self._committed: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_message_events: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._subscribers: Set[Tuple[str, str]] = set()
        self._publish_failures: List[Exception] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryTopicBus connected")

    async def close(self) -> None:
        """Close and stop all subscriptions."""
        self._connected = False
        self._subscribers.clear()
        for event in self._new_message_events.values():
            event.set()
        logger.debug("InMemoryTopicBus closed")

    async def publish(
        self,
        topic: str,
        payload: Any,
        attributes: Optional[Dict[str, str]] = None,
    ) -> MessagePos:
        """Publish a payload to an in-memory topic.

        Raises:
            BusConnectionError: If not connected
            BusError: If a failure was injected with fail_next_publish()
        """
        if not self._connected:
            raise BusConnectionError("Not connected")

        if self._publish_failures:
            raise self._publish_failures.pop(0)

        data = encode_payload(payload)

        async with self._lock:
            messages = self._topics[topic]
            pos = MessagePos(
                topic=topic,
                partition=0,
                offset=len(messages),
                timestamp_ms=int(time.time() * 1000),
            )
            messages.append(BusMessage(data=data, position=pos, attributes=dict(attributes or {})))
            self._new_message_events[topic].set()

        logger.debug(
            "Message published to in-memory bus",
            extra={"topic": topic, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[BusMessage]:
        """Yield messages from the group's committed offset onwards.

        Raises:
            BusConnectionError: If not connected
        """
        if not self._connected:
            raise BusConnectionError("Not connected")

        consumer_key = (topic, group_id)
        self._subscribers.add(consumer_key)
        position = self._committed[group_id].get(topic, 0)

        try:
            while consumer_key in self._subscribers and self._connected:
                messages = self._topics[topic]
                if position < len(messages):
                    message = messages[position]
                    position += 1
                    yield dataclasses.replace(message, group_id=group_id)
                    continue

                event = self._new_message_events[topic]
                event.clear()
                try:
                    await asyncio.wait_for(event.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._subscribers.discard(consumer_key)

    async def commit(self, message: BusMessage) -> None:
        """Commit a message for the group it was delivered to.

        Raises:
            BusError: If the message did not come from subscribe()
        """
        if message.group_id is None:
            raise BusError("Message has no consumer group to commit for")

        topic = message.position.topic
        offsets = self._committed[message.group_id]
        offsets[topic] = max(offsets.get(topic, 0), message.position.offset + 1)

    def unsubscribe(self, topic: str, group_id: str) -> None:
        """Stop an active subscription after its current message."""
        self._subscribers.discard((topic, group_id))
        self._new_message_events[topic].set()

    # Testing helpers

    def fail_next_publish(self, times: int = 1, exc: Exception | None = None) -> None:
        """Make the next ``times`` publishes raise ``exc``."""
        for _ in range(times):
            self._publish_failures.append(exc or BusError("Injected publish failure"))

    def get_messages(self, topic: str) -> List[BusMessage]:
        """All messages ever published to ``topic``."""
        return list(self._topics.get(topic, []))

    def get_payloads(self, topic: str) -> List[Any]:
        """Decoded payloads of all messages on ``topic``."""
        return [m.json() for m in self.get_messages(topic)]

    def get_message_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))

    def committed_offset(self, topic: str, group_id: str) -> int:
        return self._committed.get(group_id, {}).get(topic, 0)

    async def wait_for_messages(
        self,
        topic: str,
        count: int,
        timeout: float = 5.0,
    ) -> bool:
        """Wait for a specific number of messages (testing helper)."""
        start = time.time()
        while time.time() - start < timeout:
            if self.get_message_count(topic) >= count:
                return True
            await asyncio.sleep(0.05)
        return False
