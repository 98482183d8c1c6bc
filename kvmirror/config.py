"""
Configuration management for kvmirror.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation, which are
passed explicitly into constructors (nothing reads the environment lazily).

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set KV credentials explicitly
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env variable names stable; deployed functions rely on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

KV_API_BASE = "https://api.cloudflare.com/client/v4"


class BusBackend(Enum):
    """Supported topic bus backends.

    MEMORY keeps messages in process memory and is meant for tests and the demo.
    """

    MEMORY = "memory"
    KAFKA = "kafka"


class StoreBackend(Enum):
    """Supported primary store backends for the queue collections.

    MEMORY loses pending retries and dead letters on restart.
    """

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class KvConfig:
    """Remote KV store connection and local retry tuning.

    Attributes:
        account_id: KV account identifier
        namespace_id: KV namespace identifier
        api_token: Bearer token for the KV API
        base_url: Override for the namespace base URL (tests, proxies)
        max_retries: Maximum attempts for transient failures
        base_delay_ms: Base delay for exponential backoff
        max_delay_ms: Cap for the exponential part of the delay
        jitter_ms: Upper bound of the random jitter added to each delay
        timeout_seconds: Per-request HTTP timeout
    """

    account_id: str = ""
    namespace_id: str = ""
    api_token: str = ""
    base_url: str | None = None
    max_retries: int = 5
    base_delay_ms: int = 250
    max_delay_ms: int = 8000
    jitter_ms: int = 200
    timeout_seconds: float = 30.0

    @property
    def namespace_url(self) -> str:
        """Base URL of the namespace (``.../values/{key}`` hangs off it)."""
        if self.base_url:
            return self.base_url.rstrip("/")
        return (
            f"{KV_API_BASE}/accounts/{self.account_id}"
            f"/storage/kv/namespaces/{self.namespace_id}"
        )

    @classmethod
    def from_env(cls) -> KvConfig:
        """Load configuration from environment variables."""
        return cls(
            account_id=os.getenv("CF_ACCOUNT_ID", ""),
            namespace_id=os.getenv("CLOUDFLARE_NAMESPACE_ID", ""),
            api_token=os.getenv("CLOUDFLARE_API_KEY", ""),
            base_url=os.getenv("KV_BASE_URL"),
            max_retries=int(os.getenv("KV_MAX_RETRIES", "5")),
            base_delay_ms=int(os.getenv("KV_BASE_DELAY_MS", "250")),
            max_delay_ms=int(os.getenv("KV_MAX_DELAY_MS", "8000")),
            jitter_ms=int(os.getenv("KV_JITTER_MS", "200")),
            timeout_seconds=float(os.getenv("KV_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class MirrorConfig:
    """Mirror reconciliation settings.

    Attributes:
        index_concurrency: Maximum index writes/deletes in flight per event
        manifest_prefix: Prefix of the manifest key for a canonical key
        manifest_conflict_retries: Re-runs allowed when the manifest changed
            underneath a reconciliation
        timeout_seconds: Budget for a single change event
    """

    index_concurrency: int = 20
    manifest_prefix: str = "idx:manifest:"
    manifest_conflict_retries: int = 1
    timeout_seconds: float = 180.0

    @classmethod
    def from_env(cls) -> MirrorConfig:
        """Load configuration from environment variables."""
        return cls(
            index_concurrency=int(os.getenv("KV_INDEX_CONCURRENCY", "20")),
            manifest_prefix=os.getenv("KV_MANIFEST_PREFIX", "idx:manifest:"),
            manifest_conflict_retries=int(os.getenv("KV_MANIFEST_CONFLICT_RETRIES", "1")),
            timeout_seconds=float(os.getenv("MIRROR_TIMEOUT_SECONDS", "180")),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Durable retry worker settings.

    Attributes:
        topic: Topic carrying failed KV operations
        group_id: Consumer group of the retry worker
        max_attempts: Durable attempts before dead-lettering
        base_delay_minutes: First re-enqueue delay
        max_delay_minutes: Cap for the re-enqueue delay
    """

    topic: str = "kv-mirror-retry"
    group_id: str = "kv-mirror-retry-worker"
    max_attempts: int = 8
    base_delay_minutes: int = 1
    max_delay_minutes: int = 60

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            topic=os.getenv("KV_RETRY_TOPIC", "kv-mirror-retry"),
            group_id=os.getenv("KV_RETRY_GROUP_ID", "kv-mirror-retry-worker"),
            max_attempts=int(os.getenv("KV_RETRY_MAX_ATTEMPTS", "8")),
            base_delay_minutes=int(os.getenv("KV_RETRY_BASE_MIN_DELAY", "1")),
            max_delay_minutes=int(os.getenv("KV_RETRY_MAX_MIN_DELAY", "60")),
        )


@dataclass(frozen=True)
class DispatchQueueConfig:
    """Delayed dispatch queue settings.

    Attributes:
        collection: Primary store collection holding pending entries
        dead_letter_collection: Collection receiving given-up operations
        sweep_interval_seconds: Interval between queue sweeps
        max_publish_retries: Publish failures tolerated per entry
        backoff_minutes: Delay per publish failure (1st, 2nd, 3rd...)
        timeout_seconds: Budget for a single sweep
    """

    collection: str = "topic-queue"
    dead_letter_collection: str = "kv-retry-dead"
    sweep_interval_seconds: float = 60.0
    max_publish_retries: int = 3
    backoff_minutes: tuple[int, ...] = (1, 10, 30)
    timeout_seconds: float = 180.0

    @classmethod
    def from_env(cls) -> DispatchQueueConfig:
        """Load configuration from environment variables."""
        return cls(
            collection=os.getenv("TOPIC_QUEUE_COLLECTION", "topic-queue"),
            dead_letter_collection=os.getenv("KV_DEAD_LETTER_COLLECTION", "kv-retry-dead"),
            sweep_interval_seconds=float(os.getenv("TOPIC_QUEUE_INTERVAL_SECONDS", "60")),
            max_publish_retries=int(os.getenv("TOPIC_QUEUE_MAX_PUBLISH_RETRIES", "3")),
            backoff_minutes=tuple(
                int(part)
                for part in os.getenv("TOPIC_QUEUE_BACKOFF_MINUTES", "1,10,30").split(",")
                if part.strip()
            ),
            timeout_seconds=float(os.getenv("TOPIC_QUEUE_TIMEOUT_SECONDS", "180")),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda topic bus configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        client_id: Client identifier reported to the brokers
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        acks: Producer acknowledgment level ('all' for strongest durability)
        enable_idempotence: Enable idempotent producer
        auto_offset_reset: Where a new consumer group starts
    """

    brokers: str = "localhost:9092"
    client_id: str = "kvmirror"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    acks: str = "all"
    enable_idempotence: bool = True
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            client_id=os.getenv("KAFKA_CLIENT_ID", "kvmirror"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Primary store adapter configuration.

    Attributes:
        path: SQLite database file for the queue collections
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL journal mode enabled
    """

    path: str = "/var/lib/kvmirror/queue.db"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("STORE_PATH", "/var/lib/kvmirror/queue.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class AppConfig:
    """Complete service configuration.

    Attributes:
        bus_backend: Which topic bus backend to use
        store_backend: Which primary store adapter to use
        kv: KV store configuration
        mirror: Mirror engine configuration
        retry: Retry worker configuration
        queue: Dispatch queue configuration
        kafka: Kafka configuration (if bus_backend is KAFKA)
        storage: SQLite configuration (if store_backend is SQLITE)
        observability: Logging configuration
    """

    bus_backend: BusBackend = BusBackend.KAFKA
    store_backend: StoreBackend = StoreBackend.SQLITE
    kv: KvConfig = field(default_factory=KvConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    queue: DispatchQueueConfig = field(default_factory=DispatchQueueConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        bus_str = os.getenv("BUS_BACKEND", "kafka").lower()
        try:
            bus_backend = BusBackend(bus_str)
        except ValueError:
            raise ValueError(f"Invalid BUS_BACKEND '{bus_str}'. Must be one of: memory, kafka")

        store_str = os.getenv("STORE_BACKEND", "sqlite").lower()
        try:
            store_backend = StoreBackend(store_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{store_str}'. Must be one of: memory, sqlite")

        config = cls(
            bus_backend=bus_backend,
            store_backend=store_backend,
            kv=KvConfig.from_env(),
            mirror=MirrorConfig.from_env(),
            retry=RetryConfig.from_env(),
            queue=DispatchQueueConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.kv.base_url:
            missing = [
                name
                for name, value in (
                    ("CF_ACCOUNT_ID", self.kv.account_id),
                    ("CLOUDFLARE_NAMESPACE_ID", self.kv.namespace_id),
                    ("CLOUDFLARE_API_KEY", self.kv.api_token),
                )
                if not value
            ]
            if missing:
                raise ValueError(f"Missing KV settings: {', '.join(missing)}")

        if self.kv.max_retries < 1:
            raise ValueError("KV_MAX_RETRIES must be at least 1")
        if self.retry.max_attempts < 1:
            raise ValueError("KV_RETRY_MAX_ATTEMPTS must be at least 1")
        if not self.retry.topic.strip():
            raise ValueError("KV_RETRY_TOPIC must not be empty")
        if not self.queue.backoff_minutes:
            raise ValueError("TOPIC_QUEUE_BACKOFF_MINUTES must list at least one delay")

        if self.bus_backend == BusBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required when BUS_BACKEND=kafka")
        if self.store_backend == StoreBackend.SQLITE and not self.storage.path:
            raise ValueError("STORE_PATH is required when STORE_BACKEND=sqlite")

        if self.bus_backend == BusBackend.MEMORY or self.store_backend == StoreBackend.MEMORY:
            logger.warning(
                "In-memory backend selected, queued retries are lost on restart",
                extra={
                    "bus_backend": self.bus_backend.value,
                    "store_backend": self.store_backend.value,
                },
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Mirror configuration loaded",
            extra={
                "bus_backend": self.bus_backend.value,
                "store_backend": self.store_backend.value,
                "kv_namespace": self.kv.namespace_id or None,
                "kv_max_retries": self.kv.max_retries,
                "index_concurrency": self.mirror.index_concurrency,
                "retry_topic": self.retry.topic,
                "retry_max_attempts": self.retry.max_attempts,
                "queue_collection": self.queue.collection,
                "queue_interval_seconds": self.queue.sweep_interval_seconds,
                "kafka_brokers": self.kafka.brokers
                if self.bus_backend == BusBackend.KAFKA
                else None,
                "log_level": self.observability.log_level,
            },
        )
