"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from crypto_tracker_indexer.models import Chain

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("RPC URL must be an HTTP(S) endpoint")
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        alias="DATABASE_MAX_OVERFLOW",
        ge=0,
        le=100,
        description="Maximum overflow connections",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class NatsSettings(BaseSettings):
    """NATS connection settings (default event bus)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="nats://localhost:4222",
        alias="NATS_URL",
        description="NATS server URL used for event publication",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate NATS URL format."""
        if not v.startswith(("nats://", "tls://")):
            raise ValueError("NATS_URL must start with nats:// or tls://")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (alternate event bus)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string used for event publication",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class RpcSettings(BaseSettings):
    """Chain RPC endpoints and client behaviour."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    ethereum_rpc_url: str = Field(
        alias="ETHEREUM_RPC_URL",
        description="Primary Ethereum mainnet RPC endpoint",
    )
    polygon_rpc_url: str | None = Field(default=None, alias="POLYGON_RPC_URL")
    arbitrum_rpc_url: str | None = Field(default=None, alias="ARBITRUM_RPC_URL")
    base_rpc_url: str | None = Field(default=None, alias="BASE_RPC_URL")

    ethereum_fallback_rpc_url: str | None = Field(default=None, alias="ETHEREUM_FALLBACK_RPC_URL")
    polygon_fallback_rpc_url: str | None = Field(default=None, alias="POLYGON_FALLBACK_RPC_URL")
    arbitrum_fallback_rpc_url: str | None = Field(default=None, alias="ARBITRUM_FALLBACK_RPC_URL")
    base_fallback_rpc_url: str | None = Field(default=None, alias="BASE_FALLBACK_RPC_URL")

    max_requests_per_second: float = Field(
        default=25.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Client-side rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=3,
        alias="RPC_MAX_RETRIES",
        ge=1,
        le=20,
        description="Attempts per endpoint before failing over",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="RPC_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff between retries",
    )
    timeout_seconds: int = Field(
        default=30,
        alias="RPC_TIMEOUT_SECONDS",
        ge=1,
        le=600,
        description="HTTP request timeout for RPC calls",
    )

    @field_validator(
        "ethereum_rpc_url",
        "polygon_rpc_url",
        "arbitrum_rpc_url",
        "base_rpc_url",
        "ethereum_fallback_rpc_url",
        "polygon_fallback_rpc_url",
        "arbitrum_fallback_rpc_url",
        "base_fallback_rpc_url",
    )
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)

    def rpc_url_for(self, chain: Chain) -> str | None:
        return getattr(self, f"{chain.value.lower()}_rpc_url")

    def fallback_rpc_url_for(self, chain: Chain) -> str | None:
        return getattr(self, f"{chain.value.lower()}_fallback_rpc_url")


class SyncSettings(BaseSettings):
    """Sync-loop pacing and bounds."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    block_batch_size: int = Field(
        default=100,
        alias="BLOCK_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Maximum blocks processed per cycle",
    )
    worker_count: int = Field(
        default=4,
        alias="WORKER_COUNT",
        ge=1,
        le=64,
        description="Concurrent block fetches within one cycle",
    )
    interval_seconds: float = Field(
        default=15.0,
        alias="SYNC_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Tick interval between sync cycles",
    )
    cycle_timeout_seconds: float = Field(
        default=120.0,
        alias="SYNC_CYCLE_TIMEOUT_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Hard deadline for a single sync cycle",
    )
    reorg_rollback_depth: int = Field(
        default=12,
        alias="REORG_ROLLBACK_DEPTH",
        ge=1,
        le=10_000,
        description="Blocks below the persisted head removed on reorg",
    )


class TelemetrySettings(BaseSettings):
    """OpenTelemetry exporter settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    otlp_endpoint: str = Field(
        default="http://localhost:4318",
        alias="OTEL_EXPORTER_OTLP_ENDPOINT",
        description="OTLP/HTTP collector endpoint",
    )
    enabled: bool = Field(
        default=True,
        alias="OTEL_ENABLED",
        description="Export traces and metrics",
    )

    @field_validator("otlp_endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("OTEL_EXPORTER_OTLP_ENDPOINT must be an HTTP(S) endpoint")
        return v.rstrip("/")


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from crypto_tracker_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.block_batch_size)
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
    nats: NatsSettings = Field(
        default_factory=lambda: NatsSettings(
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
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    telemetry: TelemetrySettings = Field(
        default_factory=lambda: TelemetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    service_name: str = Field(
        default="crypto-tracker-indexer",
        alias="SERVICE_NAME",
        min_length=1,
        description="Service name reported to telemetry",
    )
    environment: str = Field(
        default="development",
        alias="ENVIRONMENT",
        min_length=1,
        description="Deployment environment name",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    event_bus: Literal["nats", "redis"] = Field(
        default="nats",
        alias="EVENT_BUS",
        description="Transport for transaction events",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    @property
    def event_bus_url(self) -> str:
        return self.redis.url if self.event_bus == "redis" else self.nats.url

    def configured_chains(self) -> list[Chain]:
        """Chains that have an RPC endpoint configured, in enum order."""
        return [chain for chain in Chain if self.rpc.rpc_url_for(chain)]

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "service_name": self.service_name,
            "environment": self.environment,
            "database_url": self._redact_url(self.database.url),
            "event_bus": self.event_bus,
            "event_bus_url": self._redact_url(self.event_bus_url),
            "rpc": {
                chain.value.lower(): self._redact_url(self.rpc.rpc_url_for(chain) or "(not set)")
                for chain in Chain
            },
            "sync": {
                "block_batch_size": str(self.sync.block_batch_size),
                "worker_count": str(self.sync.worker_count),
                "interval_seconds": str(self.sync.interval_seconds),
                "reorg_rollback_depth": str(self.sync.reorg_rollback_depth),
            },
            "otlp_endpoint": self.telemetry.otlp_endpoint,
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

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
