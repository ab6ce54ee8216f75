"""
Configuration management for the ECA server.

Server settings come from ECA_*, SQLITE_* and LOG_* environment variables and
are held in frozen dataclasses. HTTP-facing settings (bind address, CORS,
webhook credentials) live in api/settings.py.

Invariants:
    - Defaults run a local SQLite file with JSON logs
    - The degraded fallback is rejected outside development/test
    - log_config() prints paths and flags only, never credentials

How to change safely:
    - New variables need a default so existing deployments keep starting
    - Keep validate() the single place that rejects inconsistent settings
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class Environment(Enum):
    """Deployment environment."""

    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"
    TEST = "test"


# Environments in which the degraded store fallback may be enabled
DEGRADED_FALLBACK_ENVIRONMENTS = frozenset({Environment.DEVELOPMENT, Environment.TEST})


@dataclass(frozen=True)
class StorageConfig:
    """Backing store configuration.

    Attributes:
        db_path: Path of the SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds (store call deadline)
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    db_path: str = "/var/lib/retailhub/eca.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("ECA_DB_PATH", "/var/lib/retailhub/eca.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Action processing configuration.

    Attributes:
        request_timeout_seconds: Deadline for processing one webhook
        snapshot_max_attempts: Compare-and-set attempts for one snapshot delta
        rules_file: Optional YAML file with ECA rule definitions
    """

    request_timeout_seconds: float = 10.0
    snapshot_max_attempts: int = 5
    rules_file: str | None = None

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        return cls(
            request_timeout_seconds=float(os.getenv("ECA_REQUEST_TIMEOUT_SECONDS", "10")),
            snapshot_max_attempts=int(os.getenv("ECA_SNAPSHOT_MAX_ATTEMPTS", "5")),
            rules_file=os.getenv("ECA_RULES_FILE") or None,
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
        environment: Deployment environment
        allow_degraded_fallback: Start on the in-memory store when the SQLite
            store cannot be opened (development/test only)
        storage: Backing store configuration
        engine: Action processing configuration
        observability: Observability configuration
    """

    environment: Environment = Environment.DEVELOPMENT
    allow_degraded_fallback: bool = False
    storage: StorageConfig = field(default_factory=StorageConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        env_str = os.getenv("ECA_ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            raise ValueError(
                f"Invalid ECA_ENVIRONMENT '{env_str}'. "
                "Must be one of: production, staging, development, test"
            )

        config = cls(
            environment=environment,
            allow_degraded_fallback=os.getenv("ECA_ALLOW_DEGRADED_FALLBACK", "false").lower()
            == "true",
            storage=StorageConfig.from_env(),
            engine=EngineConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.allow_degraded_fallback and self.environment not in DEGRADED_FALLBACK_ENVIRONMENTS:
            raise ValueError(
                "ECA_ALLOW_DEGRADED_FALLBACK may only be enabled when "
                f"ECA_ENVIRONMENT is development or test (got {self.environment.value})"
            )

        if not self.storage.db_path:
            raise ValueError("ECA_DB_PATH is required")

        if self.engine.request_timeout_seconds <= 0:
            raise ValueError("ECA_REQUEST_TIMEOUT_SECONDS must be positive")

        if self.engine.snapshot_max_attempts < 1:
            raise ValueError("ECA_SNAPSHOT_MAX_ATTEMPTS must be at least 1")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")

        if self.engine.rules_file and not Path(self.engine.rules_file).exists():
            raise ValueError(f"ECA_RULES_FILE does not exist: {self.engine.rules_file}")

        db_dir = Path(self.storage.db_path).parent
        if self.storage.db_path != ":memory:" and not db_dir.exists():
            logger.warning(
                f"Database directory does not exist: {db_dir}. "
                "It will be created on first connect."
            )

    @property
    def degraded_fallback_enabled(self) -> bool:
        """Whether the degraded fallback may actually be used."""
        return (
            self.allow_degraded_fallback
            and self.environment in DEGRADED_FALLBACK_ENVIRONMENTS
        )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "environment": self.environment.value,
                "db_path": self.storage.db_path,
                "busy_timeout_ms": self.storage.busy_timeout_ms,
                "request_timeout_seconds": self.engine.request_timeout_seconds,
                "rules_file": self.engine.rules_file,
                "degraded_fallback": self.allow_degraded_fallback,
                "log_level": self.observability.log_level,
            },
        )
