"""
Configuration management for the SyncDB server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development, except
      ACCOUNT_ID which every deployment must set
    - Limits are positive; MAX_CHANGES never exceeds 1024

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep every setting readable through its section's from_env()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# Upper bound for MAX_CHANGES; matches the change engine's clamp
MAX_CHANGES_CEILING = 1024


class StorageBackend(Enum):
    """Supported record store backends."""

    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        backend: Which record store to use
        data_dir: Directory for SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "/var/lib/syncdb"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If STORAGE_BACKEND names an unknown backend
        """
        backend_str = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: sqlite, memory"
            )

        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/syncdb"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class LimitsConfig:
    """Per-call limits.

    Attributes:
        max_objects_in_get: Cap on objects one get call may return
        max_changes: Upper clamp for a changes call's maxChanges
    """

    max_objects_in_get: int = 1000
    max_changes: int = MAX_CHANGES_CEILING

    @classmethod
    def from_env(cls) -> LimitsConfig:
        """Load configuration from environment variables."""
        return cls(
            max_objects_in_get=int(os.getenv("MAX_OBJECTS_IN_GET", "1000")),
            max_changes=int(os.getenv("MAX_CHANGES", str(MAX_CHANGES_CEILING))),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Host to bind to
        port: Port to listen on
        path: Path the API endpoint is served on
    """

    host: str = "0.0.0.0"
    port: int = 8080
    path: str = "/jmap"

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            path=os.getenv("HTTP_PATH", "/jmap"),
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
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        account_id: Account the server holds
        storage: Record store configuration
        limits: Per-call limits
        http: HTTP server configuration
        observability: Logging configuration
    """

    account_id: str = ""
    storage: StorageConfig = field(default_factory=StorageConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
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
        config = cls(
            account_id=os.getenv("ACCOUNT_ID", ""),
            storage=StorageConfig.from_env(),
            limits=LimitsConfig.from_env(),
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
        if not self.account_id:
            raise ValueError("ACCOUNT_ID is required")

        if not isinstance(self.storage.backend, StorageBackend):
            raise ValueError(f"Invalid storage backend: {self.storage.backend!r}")

        if self.limits.max_objects_in_get < 1:
            raise ValueError("MAX_OBJECTS_IN_GET must be positive")
        if self.limits.max_changes < 1:
            raise ValueError("MAX_CHANGES must be positive")
        if self.limits.max_changes > MAX_CHANGES_CEILING:
            raise ValueError(f"MAX_CHANGES must not exceed {MAX_CHANGES_CEILING}")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.storage.backend == StorageBackend.SQLITE and not os.path.exists(
            self.storage.data_dir
        ):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "account_id": self.account_id,
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "http_path": self.http.path,
                "max_objects_in_get": self.limits.max_objects_in_get,
                "max_changes": self.limits.max_changes,
                "log_level": self.observability.log_level,
            },
        )
