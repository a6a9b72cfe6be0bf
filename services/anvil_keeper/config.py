"""
Configuration management for anvil-keeper.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit state location
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported snapshot store backends."""

    FILE = "file"
    S3 = "s3"


def _optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class AnvilConfig:
    """Anvil node connection configuration.

    Attributes:
        ws_url: WebSocket JSON-RPC endpoint of the node
        dial_timeout_seconds: Timeout for one connection attempt
        connect_retries: Connection attempts before giving up
        connect_retry_delay_ms: Delay between connection attempts
        request_timeout_seconds: Timeout for one RPC call (dumps can be slow)
    """

    ws_url: str = "ws://127.0.0.1:8545"
    dial_timeout_seconds: float = 1.0
    connect_retries: int = 30
    connect_retry_delay_ms: int = 500
    request_timeout_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> AnvilConfig:
        """Load configuration from environment variables."""
        return cls(
            ws_url=os.getenv("ANVIL_WS_URL", "ws://127.0.0.1:8545"),
            dial_timeout_seconds=float(os.getenv("ANVIL_DIAL_TIMEOUT_SECONDS", "1.0")),
            connect_retries=int(os.getenv("ANVIL_CONNECT_RETRIES", "30")),
            connect_retry_delay_ms=int(os.getenv("ANVIL_CONNECT_RETRY_DELAY_MS", "500")),
            request_timeout_seconds=float(os.getenv("ANVIL_REQUEST_TIMEOUT_SECONDS", "120")),
        )


@dataclass(frozen=True)
class FileStoreConfig:
    """Local file store configuration.

    Attributes:
        path: Snapshot file location
    """

    path: str = "anvil_state.txt"

    @classmethod
    def from_env(cls) -> FileStoreConfig:
        """Load configuration from environment variables."""
        return cls(path=os.getenv("STATE_FILE", "anvil_state.txt"))


@dataclass(frozen=True)
class S3Config:
    """S3 store configuration.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        snapshot_key: Object key holding the snapshot
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "anvil-keeper"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    snapshot_key: str = "snapshots/anvil_state.txt"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "anvil-keeper"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            snapshot_key=os.getenv("S3_SNAPSHOT_KEY", "snapshots/anvil_state.txt"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot capture configuration.

    Attributes:
        max_retries: Retries per capture before the service stops (0 = fail fast)
        retry_delay_ms: Delay before the first retry
        retry_backoff: Multiplier applied to the delay after each retry
        drain_timeout_seconds: Deadline for the final capture at shutdown,
            None waits for as long as it takes
    """

    max_retries: int = 3
    retry_delay_ms: int = 500
    retry_backoff: float = 2.0
    drain_timeout_seconds: float | None = None

    @classmethod
    def from_env(cls) -> SnapshotConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("SNAPSHOT_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("SNAPSHOT_RETRY_DELAY_MS", "500")),
            retry_backoff=float(os.getenv("SNAPSHOT_RETRY_BACKOFF", "2.0")),
            drain_timeout_seconds=_optional_float("SNAPSHOT_DRAIN_TIMEOUT_SECONDS"),
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
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        store_backend: Which snapshot store to use
        anvil: Node connection configuration
        file_store: File store configuration (if store_backend is FILE)
        s3: S3 configuration (if store_backend is S3)
        snapshot: Capture configuration
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.FILE
    anvil: AnvilConfig = field(default_factory=AnvilConfig)
    file_store: FileStoreConfig = field(default_factory=FileStoreConfig)
    s3: S3Config = field(default_factory=S3Config)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("STORE_BACKEND", "file").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: file, s3")

        config = cls(
            store_backend=store_backend,
            anvil=AnvilConfig.from_env(),
            file_store=FileStoreConfig.from_env(),
            s3=S3Config.from_env(),
            snapshot=SnapshotConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.anvil.ws_url.startswith(("ws://", "wss://")):
            raise ValueError(f"ANVIL_WS_URL must be a ws:// or wss:// URL, got '{self.anvil.ws_url}'")
        if self.anvil.dial_timeout_seconds <= 0:
            raise ValueError("ANVIL_DIAL_TIMEOUT_SECONDS must be positive")
        if self.anvil.connect_retries < 1:
            raise ValueError("ANVIL_CONNECT_RETRIES must be at least 1")

        if self.store_backend == StoreBackend.FILE:
            if not self.file_store.path:
                raise ValueError("STATE_FILE is required when STORE_BACKEND=file")
        elif self.store_backend == StoreBackend.S3:
            if not self.s3.bucket:
                raise ValueError("S3_BUCKET is required when STORE_BACKEND=s3")
            if not self.s3.snapshot_key:
                raise ValueError("S3_SNAPSHOT_KEY is required when STORE_BACKEND=s3")

        if self.snapshot.max_retries < 0:
            raise ValueError("SNAPSHOT_MAX_RETRIES must not be negative")
        if self.snapshot.retry_backoff < 1.0:
            raise ValueError("SNAPSHOT_RETRY_BACKOFF must be at least 1.0")
        if self.snapshot.drain_timeout_seconds is not None and self.snapshot.drain_timeout_seconds <= 0:
            raise ValueError("SNAPSHOT_DRAIN_TIMEOUT_SECONDS must be positive when set")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.store_backend == StoreBackend.FILE:
            state_dir = os.path.dirname(os.path.abspath(self.file_store.path))
            if not os.path.exists(state_dir):
                logger.warning(
                    f"State directory does not exist: {state_dir}. "
                    "It will be created on first write."
                )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "anvil_ws_url": self.anvil.ws_url,
                "state_file": self.file_store.path
                if self.store_backend == StoreBackend.FILE
                else None,
                "s3_bucket": self.s3.bucket if self.store_backend == StoreBackend.S3 else None,
                "s3_key": self.s3.snapshot_key if self.store_backend == StoreBackend.S3 else None,
                "max_retries": self.snapshot.max_retries,
                "drain_timeout_seconds": self.snapshot.drain_timeout_seconds,
                "log_level": self.observability.log_level,
            },
        )
