"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
escrow reconciler, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="postgresql+asyncpg://localhost:5432/escrow",
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(default=5, alias="DATABASE_POOL_SIZE", ge=1)
    max_overflow: int = Field(default=10, alias="DATABASE_MAX_OVERFLOW", ge=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
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


class ChainSettings(BaseSettings):
    """Chain RPC and escrow contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    escrow_contract_address: str | None = Field(
        default=None,
        alias="CHAIN_ESCROW_CONTRACT_ADDRESS",
        description="Address of the escrow contract whose events are reconciled",
    )
    max_requests_per_second: float = Field(default=25.0, alias="CHAIN_MAX_REQUESTS_PER_SECOND", gt=0)
    max_retries: int = Field(default=3, alias="CHAIN_MAX_RETRIES", ge=1)
    retry_delay_seconds: float = Field(default=1.0, alias="CHAIN_RETRY_DELAY_SECONDS", ge=0)
    poll_interval_seconds: float = Field(
        default=5.0,
        alias="CHAIN_POLL_INTERVAL_SECONDS",
        description="Interval between live log polls",
        gt=0,
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("escrow_contract_address")
    @classmethod
    def validate_contract_address(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not _ADDRESS_RE.match(v):
            raise ValueError("CHAIN_ESCROW_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        return v


class SyncSettings(BaseSettings):
    """Block sync and resync settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    batch_size: int = Field(default=100, alias="SYNC_BATCH_SIZE", ge=1)
    confirmation_blocks: int = Field(
        default=12,
        alias="SYNC_CONFIRMATION_BLOCKS",
        description="Most recent blocks left unprocessed to tolerate shallow reorgs",
        ge=0,
    )
    bootstrap_blocks: int = Field(
        default=1000,
        alias="SYNC_BOOTSTRAP_BLOCKS",
        description="Blocks backfilled when no checkpoint exists yet",
        ge=1,
    )
    stale_after_seconds: int = Field(default=3600, alias="SYNC_STALE_AFTER_SECONDS", ge=1)
    max_batch_retries: int = Field(default=3, alias="SYNC_MAX_BATCH_RETRIES", ge=1)
    retry_delay_seconds: float = Field(default=5.0, alias="SYNC_RETRY_DELAY_SECONDS", ge=0)
    resync_pause_seconds: float = Field(default=0.1, alias="SYNC_RESYNC_PAUSE_SECONDS", ge=0)
    state_ttl_seconds: int = Field(
        default=86400,
        alias="SYNC_STATE_TTL_SECONDS",
        description="TTL of saved resync progress",
        ge=1,
    )


class JobSettings(BaseSettings):
    """Scheduled job intervals and lock TTLs."""

    model_config = SettingsConfigDict(env_prefix="JOBS_", extra="ignore")

    enabled: bool = Field(default=True, alias="JOBS_ENABLED")
    instance_id: str | None = Field(
        default=None,
        alias="JOBS_INSTANCE_ID",
        description="Identifier of this process in lock ownership; generated when unset",
    )
    heartbeat_ttl_seconds: int = Field(default=90, alias="JOBS_HEARTBEAT_TTL_SECONDS", ge=1)
    execution_ttl_seconds: int = Field(default=86400, alias="JOBS_EXECUTION_TTL_SECONDS", ge=1)

    sync_interval_seconds: int = Field(default=60, alias="JOBS_SYNC_INTERVAL_SECONDS", ge=1)
    sync_lock_ttl_seconds: int = Field(default=300, alias="JOBS_SYNC_LOCK_TTL_SECONDS", ge=1)
    status_check_interval_seconds: int = Field(default=300, alias="JOBS_STATUS_CHECK_INTERVAL_SECONDS", ge=1)
    status_check_lock_ttl_seconds: int = Field(default=60, alias="JOBS_STATUS_CHECK_LOCK_TTL_SECONDS", ge=1)
    deep_reconciliation_interval_seconds: int = Field(
        default=3600, alias="JOBS_DEEP_RECONCILIATION_INTERVAL_SECONDS", ge=1
    )
    deep_reconciliation_lock_ttl_seconds: int = Field(
        default=3600, alias="JOBS_DEEP_RECONCILIATION_LOCK_TTL_SECONDS", ge=1
    )
    recovery_check_interval_seconds: int = Field(default=600, alias="JOBS_RECOVERY_CHECK_INTERVAL_SECONDS", ge=1)
    recovery_check_lock_ttl_seconds: int = Field(default=300, alias="JOBS_RECOVERY_CHECK_LOCK_TTL_SECONDS", ge=1)
    consistency_check_interval_seconds: int = Field(
        default=1800, alias="JOBS_CONSISTENCY_CHECK_INTERVAL_SECONDS", ge=1
    )
    consistency_check_lock_ttl_seconds: int = Field(
        default=1800, alias="JOBS_CONSISTENCY_CHECK_LOCK_TTL_SECONDS", ge=1
    )
    deep_consistency_interval_seconds: int = Field(
        default=7 * 24 * 3600, alias="JOBS_DEEP_CONSISTENCY_INTERVAL_SECONDS", ge=1
    )
    deep_consistency_lock_ttl_seconds: int = Field(
        default=7200, alias="JOBS_DEEP_CONSISTENCY_LOCK_TTL_SECONDS", ge=1
    )
    full_resync_lock_ttl_seconds: int = Field(default=7200, alias="JOBS_FULL_RESYNC_LOCK_TTL_SECONDS", ge=1)


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from escrow_reconciler.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.batch_size)
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
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
    jobs: JobSettings = Field(
        default_factory=lambda: JobSettings(
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

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url),
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url) if self.chain.fallback_rpc_url else "(not set)"
                ),
                "escrow_contract_address": self.chain.escrow_contract_address or "(not set)",
            },
            "sync": {
                "batch_size": str(self.sync.batch_size),
                "confirmation_blocks": str(self.sync.confirmation_blocks),
                "bootstrap_blocks": str(self.sync.bootstrap_blocks),
                "stale_after_seconds": str(self.sync.stale_after_seconds),
            },
            "jobs_enabled": str(self.jobs.enabled),
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "sync", "audit"]) -> None:
        """Validate command-specific requirements.

        A command that reads contract events refuses to start without a
        contract address.
        """
        if command in ("run", "sync") and not self.chain.escrow_contract_address:
            raise ValueError("CHAIN_ESCROW_CONTRACT_ADDRESS is required to ingest escrow events")

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

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
