"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
peer benchmarking service, loading and validating environment variables
at startup. It also defines the runtime-mutable scheduler configuration
exposed through ``get_config()``/``update_config()``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from peer_benchmarking.exceptions import ConfigurationError

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./peer_benchmarking.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite (aiosqlite) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class BenchmarkSettings(BaseSettings):
    """Refresh pipeline defaults loaded at startup."""

    model_config = SettingsConfigDict(env_prefix="BENCHMARK_", extra="ignore")

    update_frequency_seconds: int = Field(
        default=300,
        alias="BENCHMARK_UPDATE_FREQUENCY_SECONDS",
        ge=1,
        le=86_400,
        description="Scheduler tick interval",
    )
    stale_threshold_seconds: int = Field(
        default=900,
        alias="BENCHMARK_STALE_THRESHOLD_SECONDS",
        ge=1,
        le=30 * 86_400,
        description="Age after which a benchmark record is stale",
    )
    batch_size: int = Field(
        default=50,
        alias="BENCHMARK_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Max jobs enqueued and dequeued per tick",
    )
    max_retries: int = Field(
        default=3,
        alias="BENCHMARK_MAX_RETRIES",
        ge=0,
        le=100,
        description="Retries before a job is terminally FAILED",
    )
    priority_high_threshold: float = Field(
        default=5.0,
        alias="BENCHMARK_PRIORITY_HIGH_THRESHOLD",
        ge=0.0,
        le=100.0,
        description="Percentile shift logged as a significant change",
    )
    priority_medium_threshold: float = Field(
        default=2.0,
        alias="BENCHMARK_PRIORITY_MEDIUM_THRESHOLD",
        ge=0.0,
        le=100.0,
        description="Percentile shift that schedules a MEDIUM peer group refresh",
    )
    snapshot_retention: int = Field(
        default=5,
        alias="BENCHMARK_SNAPSHOT_RETENTION",
        ge=1,
        le=1000,
        description="Active snapshots kept per peer group",
    )
    stuck_job_ticks: int = Field(
        default=3,
        alias="BENCHMARK_STUCK_JOB_TICKS",
        ge=1,
        le=1000,
        description="Ticks a job may stay RUNNING before it is reaped",
    )
    inflight_ttl_seconds: int = Field(
        default=120,
        alias="BENCHMARK_INFLIGHT_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL of the per-address in-flight marker",
    )
    inflight_wait_seconds: float = Field(
        default=5.0,
        alias="BENCHMARK_INFLIGHT_WAIT_SECONDS",
        ge=0.0,
        le=300.0,
        description="How long a first-ever read waits on a concurrent refresh",
    )
    min_members_for_distribution: int = Field(
        default=20,
        alias="BENCHMARK_MIN_MEMBERS_FOR_DISTRIBUTION",
        ge=2,
        le=1_000_000,
        description="Scored members needed before a snapshot uses empirical quantiles",
    )
    force_refresh_limit: int = Field(
        default=1000,
        alias="BENCHMARK_FORCE_REFRESH_LIMIT",
        ge=1,
        le=1_000_000,
        description="Max stale addresses scheduled by a forced refresh",
    )


class PriorityThresholds(BaseModel):
    """Percentile-shift thresholds for the score-update feedback path."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    high: float = Field(default=5.0, ge=0.0, le=100.0)
    medium: float = Field(default=2.0, ge=0.0, le=100.0)

    @model_validator(mode="after")
    def validate_order(self) -> PriorityThresholds:
        if self.medium > self.high:
            raise ValueError("medium threshold must not exceed high threshold")
        return self


class SchedulerConfig(BaseModel):
    """Runtime configuration held by the refresh scheduler handle.

    Instances are immutable; updates produce a new validated instance so a
    rejected update leaves the previous configuration in place.

    Example:
        ```python
        config = SchedulerConfig()
        config = config.merged({"batch_size": 100})
        ```
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    update_frequency_seconds: int = Field(default=300, ge=1, le=86_400)
    stale_threshold_seconds: int = Field(default=900, ge=1, le=30 * 86_400)
    batch_size: int = Field(default=50, ge=1, le=10_000)
    max_retries: int = Field(default=3, ge=0, le=100)
    priority_thresholds: PriorityThresholds = Field(default_factory=PriorityThresholds)
    snapshot_retention: int = Field(default=5, ge=1, le=1000)
    stuck_job_ticks: int = Field(default=3, ge=1, le=1000)

    @classmethod
    def from_settings(cls, settings: BenchmarkSettings) -> SchedulerConfig:
        """Build the runtime config from environment-backed settings."""
        return cls(
            update_frequency_seconds=settings.update_frequency_seconds,
            stale_threshold_seconds=settings.stale_threshold_seconds,
            batch_size=settings.batch_size,
            max_retries=settings.max_retries,
            priority_thresholds=PriorityThresholds(
                high=settings.priority_high_threshold,
                medium=settings.priority_medium_threshold,
            ),
            snapshot_retention=settings.snapshot_retention,
            stuck_job_ticks=settings.stuck_job_ticks,
        )

    @property
    def stuck_job_seconds(self) -> int:
        """Seconds a job may stay RUNNING before the reaper fails it."""
        return self.stuck_job_ticks * self.update_frequency_seconds

    def merged(self, partial: dict[str, Any]) -> SchedulerConfig:
        """Return a new config with ``partial`` applied.

        ``priority_thresholds`` may be given as a partial mapping; missing
        keys keep their current values.

        Raises:
            ConfigurationError: If any value is unknown or out of range.
        """
        data = self.model_dump()
        for key, value in partial.items():
            if key == "priority_thresholds" and isinstance(value, dict):
                data[key] = {**data[key], **value}
            elif key == "priority_thresholds" and isinstance(value, PriorityThresholds):
                data[key] = value.model_dump()
            else:
                data[key] = value
        try:
            return SchedulerConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid scheduler configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump()


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from peer_benchmarking.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.benchmark.stale_threshold_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    benchmark: BenchmarkSettings = Field(
        default_factory=lambda: BenchmarkSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def scheduler_config(self) -> SchedulerConfig:
        """Build the initial runtime scheduler configuration."""
        return SchedulerConfig.from_settings(self.benchmark)

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "benchmark": {
                "update_frequency_seconds": str(self.benchmark.update_frequency_seconds),
                "stale_threshold_seconds": str(self.benchmark.stale_threshold_seconds),
                "batch_size": str(self.benchmark.batch_size),
                "max_retries": str(self.benchmark.max_retries),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when environment variables change.
    """
    get_settings.cache_clear()
