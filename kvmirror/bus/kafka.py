"""
Kafka/Redpanda topic bus implementation.

This module provides the production backend for the topic bus. It works
with Apache Kafka, Amazon MSK, Redpanda, or any Kafka API-compatible system.

Invariants:
    - Producer uses acks=all and idempotence for durable publishes
    - Consumer uses manual commit, so unacknowledged messages are redelivered
    - Payloads are JSON, message keys are unset (no ordering is required)

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep consumer commits after processing (at-least-once)
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..config import KafkaConfig
from .base import (
    BusConnectionError,
    BusError,
    BusMessage,
    MessagePos,
    encode_payload,
)

logger = logging.getLogger(__name__)


class KafkaTopicBus:
    """Kafka implementation of the TopicBus protocol.

    Uses aiokafka for async producer/consumer operations.

    Example:
        >>> bus = KafkaTopicBus(KafkaConfig(brokers="localhost:9092"))
        >>> await bus.connect()
        >>> await bus.publish("kv-mirror-retry", {"op": "del", "key": "k", "attempt": 0})
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._producer is not None

    def _security_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            options["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            options["sasl_mechanism"] = self.config.sasl_mechanism
            options["sasl_plain_username"] = self.config.sasl_username
            options["sasl_plain_password"] = self.config.sasl_password
        return options

    async def connect(self) -> None:
        """Connect the producer.

        Raises:
            BusConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                client_id=self.config.client_id,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_options(),
            )
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "acks": self.config.acks,
                    "idempotent": self.config.enable_idempotence,
                },
            )

        except Exception as e:
            self._connected = False
            raise BusConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Close Kafka connections, flushing pending publishes."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def publish(
        self,
        topic: str,
        payload: Any,
        attributes: dict[str, str] | None = None,
    ) -> MessagePos:
        """Publish a JSON payload and wait for the broker acknowledgment.

        Raises:
            BusConnectionError: If not connected or the connection dropped
            BusError: For timeouts and other Kafka errors
        """
        if not self._producer:
            raise BusConnectionError("Not connected to Kafka")

        data = encode_payload(payload)
        headers = [(k, v.encode("utf-8")) for k, v in (attributes or {}).items()] or None

        try:
            metadata = await self._producer.send_and_wait(topic, value=data, headers=headers)
        except KafkaTimeoutError as e:
            raise BusError(f"Kafka publish timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise BusConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise BusError(f"Kafka publish failed: {e}") from e

        pos = MessagePos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )
        logger.debug(
            "Message published to Kafka",
            extra={"topic": topic, "partition": pos.partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[BusMessage]:
        """Consume ``topic`` as part of consumer group ``group_id``.

        Raises:
            BusConnectionError: If subscription fails
            BusError: For other consumer errors
        """
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.config.brokers,
                client_id=self.config.client_id,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **self._security_options(),
            )
            await self._consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            async for msg in self._consumer:
                attributes = {
                    k: v.decode("utf-8", errors="replace") for k, v in (msg.headers or ())
                }
                yield BusMessage(
                    data=msg.value or b"",
                    position=MessagePos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    attributes=attributes,
                    group_id=group_id,
                )

        except KafkaConnectionError as e:
            raise BusConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise BusError(f"Consumer error: {e}") from e

    async def commit(self, message: BusMessage) -> None:
        """Commit the offset after ``message``.

        Raises:
            BusError: If there is no consumer or the commit fails
        """
        if not self._consumer:
            raise BusError("No active consumer to commit")

        tp = TopicPartition(message.position.topic, message.position.partition)
        try:
            await self._consumer.commit({tp: OffsetAndMetadata(message.position.offset + 1, "")})
        except KafkaError as e:
            raise BusError(f"Failed to commit: {e}") from e
