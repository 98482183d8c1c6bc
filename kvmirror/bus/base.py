"""
Base protocol and types for the topic bus abstraction.

The topic bus carries asynchronous work (failed KV operations) from the
delayed dispatch queue to the retry worker. Delivery is at-least-once with
no ordering guarantee, so every consumer must be idempotent.

Invariants:
    - publish() returns only after the backend acknowledged the message
    - Payloads are JSON objects on the wire
    - A message is redelivered until commit() is called for it

How to change safely:
    - Protocol changes require updating all implementations
    - Keep payloads JSON so any backend can carry them
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import AppConfig

logger = logging.getLogger(__name__)


class BusError(Exception):
    """Base exception for topic bus operations."""
    pass


class BusConnectionError(BusError):
    """Connection to the bus backend failed."""
    pass


class BusSerializationError(BusError):
    """Failed to encode/decode a bus message."""
    pass


@dataclass(frozen=True)
class MessagePos:
    """Position of a message within a topic.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: Publish time (milliseconds)
    """
    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class BusMessage:
    """A message received from the topic bus.

    Attributes:
        data: Encoded payload (UTF-8 JSON)
        position: Where the message sits in the topic
        attributes: Optional string attributes/headers
        group_id: Consumer group the message was delivered to, if any
    """
    data: bytes
    position: MessagePos
    attributes: Dict[str, str] = field(default_factory=dict)
    group_id: Optional[str] = None

    def json(self) -> Any:
        """Parse the payload as JSON.

        Raises:
            BusSerializationError: If the payload is not valid JSON
        """
        try:
            return json.loads(self.data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BusSerializationError(f"Failed to parse message payload as JSON: {e}")

    def __str__(self) -> str:
        return f"BusMessage(pos={self.position})"


def encode_payload(payload: Any) -> bytes:
    """Encode a payload for publishing.

    Raises:
        BusSerializationError: If the payload is not JSON-serializable
    """
    try:
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise BusSerializationError(f"Payload is not JSON-serializable: {e}")


@runtime_checkable
class TopicBus(Protocol):
    """Protocol for topic bus backends.

    Example:
        >>> bus = InMemoryTopicBus()
        >>> await bus.connect()
        >>> await bus.publish("kv-mirror-retry", {"op": "del", "key": "k", "attempt": 0})
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            BusConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending publishes and release resources."""
        ...

    @abstractmethod
    async def publish(
        self,
        topic: str,
        payload: Any,
        attributes: Optional[Dict[str, str]] = None,
    ) -> MessagePos:
        """Publish a JSON payload to ``topic``.

        Raises:
            BusConnectionError: If not connected
            BusSerializationError: If the payload cannot be encoded
            BusError: For other publish failures
        """
        ...

    @abstractmethod
    def subscribe(self, topic: str, group_id: str) -> AsyncIterator[BusMessage]:
        """Yield messages published to ``topic`` for consumer group ``group_id``.

        The caller must call commit() to acknowledge processed messages.
        """
        ...

    @abstractmethod
    async def commit(self, message: BusMessage) -> None:
        """Acknowledge a consumed message for the group it was delivered to."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_topic_bus(config: "AppConfig") -> TopicBus:
    """Create a topic bus from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BusBackend
    from .kafka import KafkaTopicBus
    from .memory import InMemoryTopicBus

    if config.bus_backend == BusBackend.KAFKA:
        return KafkaTopicBus(config.kafka)
    elif config.bus_backend == BusBackend.MEMORY:
        return InMemoryTopicBus()
    else:
        raise ValueError(f"Unsupported bus backend: {config.bus_backend}")
