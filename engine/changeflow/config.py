"""
Configuration management for the ChangeFlow engine.

All configuration is done via environment variables - no config files inside containers.
The pipeline itself (tables, change logs, stages) is declared in a
pipeline definition file whose path is part of this configuration.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass(frozen=True)
class StorageConfig:
    """Pipeline database configuration.

    Attributes:
        data_dir: Directory for pipeline SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
        read_page_size: Change entries fetched per query while a stage reads
    """

    data_dir: str = "/var/lib/changeflow"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB
    read_page_size: int = 500

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/changeflow"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            read_page_size=int(os.getenv("CHANGELOG_READ_PAGE_SIZE", "500")),
        )

    def database_path(self, pipeline_name: str) -> Path:
        """Database file for a pipeline."""
        # Sanitize pipeline name to prevent path traversal
        safe_name = "".join(c for c in pipeline_name if c.isalnum() or c in "-_")
        return Path(self.data_dir) / f"pipeline_{safe_name}.db"


@dataclass(frozen=True)
class SchedulerConfig:
    """Scheduler loop configuration.

    Attributes:
        tick_interval_seconds: Time between scheduler ticks
        default_deadline_seconds: Deadline for stages without their own (None = no deadline)
        shutdown_timeout_seconds: How long stop() waits for in-flight runs
        purge_enabled: Whether consumed change entries are purged periodically
        purge_interval_seconds: Interval between purges
    """

    tick_interval_seconds: float = 1.0
    default_deadline_seconds: float | None = None
    shutdown_timeout_seconds: float = 30.0
    purge_enabled: bool = True
    purge_interval_seconds: float = 3600.0

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """Load configuration from environment variables."""
        return cls(
            tick_interval_seconds=float(os.getenv("SCHEDULER_TICK_SECONDS", "1.0")),
            default_deadline_seconds=_env_float("STAGE_DEADLINE_SECONDS", None),
            shutdown_timeout_seconds=float(os.getenv("SCHEDULER_SHUTDOWN_TIMEOUT", "30")),
            purge_enabled=os.getenv("CHANGELOG_PURGE_ENABLED", "true").lower() == "true",
            purge_interval_seconds=float(os.getenv("CHANGELOG_PURGE_INTERVAL_SECONDS", "3600")),
        )


@dataclass(frozen=True)
class ApiConfig:
    """Observation HTTP API configuration.

    Attributes:
        enabled: Whether to serve the HTTP API
        host: Host to bind to
        port: Port to listen on
        cors_origins: Allowed CORS origins
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8090
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> ApiConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("API_CORS_ORIGINS", "*")
        return cls(
            enabled=os.getenv("API_ENABLED", "true").lower() == "true",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8090")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
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
class EngineConfig:
    """Complete engine configuration.

    Attributes:
        pipeline_file: Path to the pipeline definition (YAML or JSON)
        replace_changelogs: Re-create change logs on startup (resets cursors)
        storage: Pipeline database configuration
        scheduler: Scheduler configuration
        api: HTTP API configuration
        observability: Logging configuration
    """

    pipeline_file: str = "pipeline.yaml"
    replace_changelogs: bool = False
    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            pipeline_file=os.getenv("PIPELINE_FILE", "pipeline.yaml"),
            replace_changelogs=os.getenv("REPLACE_CHANGELOGS", "false").lower() == "true",
            storage=StorageConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            api=ApiConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.scheduler.tick_interval_seconds <= 0:
            raise ValueError("SCHEDULER_TICK_SECONDS must be positive")
        if (
            self.scheduler.default_deadline_seconds is not None
            and self.scheduler.default_deadline_seconds <= 0
        ):
            raise ValueError("STAGE_DEADLINE_SECONDS must be positive")
        if self.storage.read_page_size <= 0:
            raise ValueError("CHANGELOG_READ_PAGE_SIZE must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        if not (0 < self.api.port < 65536):
            raise ValueError("API_PORT must be a valid TCP port")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "pipeline_file": self.pipeline_file,
                "data_dir": self.storage.data_dir,
                "tick_interval_seconds": self.scheduler.tick_interval_seconds,
                "default_deadline_seconds": self.scheduler.default_deadline_seconds,
                "purge_enabled": self.scheduler.purge_enabled,
                "api_enabled": self.api.enabled,
                "api_port": self.api.port if self.api.enabled else None,
                "log_level": self.observability.log_level,
            },
        )
