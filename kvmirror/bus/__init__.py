"""
Topic bus abstraction for kvmirror.

This module provides a pluggable publish/subscribe transport supporting:
- Kafka/Redpanda (production)
- In-memory (tests and local development)

The bus carries retry jobs from the delayed dispatch queue to the retry
worker. Delivery is at-least-once and unordered.

Invariants:
    - publish() returns only after the backend acknowledged the message
    - Consumers commit only after a message has been handled
"""

from .base import (
    BusConnectionError,
    BusError,
    BusMessage,
    BusSerializationError,
    MessagePos,
    TopicBus,
    create_topic_bus,
    encode_payload,
)
from .kafka import KafkaTopicBus
from .memory import InMemoryTopicBus

__all__ = [
    # Protocol and types
    "TopicBus",
    "BusMessage",
    "MessagePos",
    "BusError",
    "BusConnectionError",
    "BusSerializationError",
    "encode_payload",
    # Factory
    "create_topic_bus",
    # Implementations
    "KafkaTopicBus",
    "InMemoryTopicBus",
]
