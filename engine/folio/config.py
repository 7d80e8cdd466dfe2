"""
Configuration management for the Folio server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in agreement
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class NotifierBackend(Enum):
    """Supported change notifier transports."""

    MEMORY = "memory"
    KAFKA = "kafka"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the workspace SQLite database
        db_name: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    data_dir: str = "/var/lib/folio"
    db_name: str = "folio.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("FOLIO_DATA_DIR", "/var/lib/folio"),
            db_name=os.getenv("FOLIO_DB_NAME", "folio.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Core engine limits.

    Attributes:
        max_sync_hops: Maximum source_block_id hops when resolving a synced block
        search_limit: Default result limit for page search
    """

    max_sync_hops: int = 16
    search_limit: int = 10

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        return cls(
            max_sync_hops=int(os.getenv("FOLIO_MAX_SYNC_HOPS", "16")),
            search_limit=int(os.getenv("FOLIO_SEARCH_LIMIT", "10")),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda notifier transport configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Topic receiving change events
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level
        linger_ms: Producer batching delay
    """

    brokers: str = "localhost:9092"
    topic: str = "folio-changes"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    # Change events are advisory; leader ack is enough
    acks: str = "1"
    linger_ms: int = 5

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "folio-changes"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "1"),
            linger_ms=int(os.getenv("KAFKA_LINGER_MS", "5")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("HTTP_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

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
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        notifier_backend: Which change notifier transport to use
        storage: Local storage configuration
        engine: Core engine limits
        kafka: Kafka configuration (if notifier_backend is KAFKA)
        http: HTTP server configuration
        observability: Observability configuration
    """

    notifier_backend: NotifierBackend = NotifierBackend.MEMORY
    storage: StorageConfig = field(default_factory=StorageConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("NOTIFIER_BACKEND", "memory").lower()
        try:
            notifier_backend = NotifierBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid NOTIFIER_BACKEND '{backend_str}'. Must be one of: memory, kafka"
            )

        config = cls(
            notifier_backend=notifier_backend,
            storage=StorageConfig.from_env(),
            engine=EngineConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.notifier_backend == NotifierBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when NOTIFIER_BACKEND=kafka")
            if not self.kafka.topic:
                raise ValueError("KAFKA_TOPIC is required when NOTIFIER_BACKEND=kafka")

        if self.engine.max_sync_hops < 1:
            raise ValueError("FOLIO_MAX_SYNC_HOPS must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "notifier_backend": self.notifier_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.notifier_backend == NotifierBackend.KAFKA
                else None,
                "kafka_topic": self.kafka.topic
                if self.notifier_backend == NotifierBackend.KAFKA
                else None,
                "data_dir": self.storage.data_dir,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "max_sync_hops": self.engine.max_sync_hops,
                "log_level": self.observability.log_level,
            },
        )
