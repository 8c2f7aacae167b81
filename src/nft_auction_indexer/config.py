"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
indexer, loading and validating environment variables at startup.
All settings are fixed for the lifetime of the process.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (SQLite accepted for local runs)",
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
        description="Connections allowed beyond the pool size",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class ChainSettings(BaseSettings):
    """Substrate node settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    ws_endpoint: str = Field(
        default="ws://127.0.0.1:9944",
        alias="CHAIN_WS_ENDPOINT",
        description="Node WebSocket endpoint",
    )
    pallet_name: str = Field(
        default="Template",
        alias="CHAIN_PALLET_NAME",
        description="Runtime name of the pallet holding the auction storage",
    )

    @field_validator("ws_endpoint")
    @classmethod
    def validate_ws_endpoint(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("CHAIN_WS_ENDPOINT must start with ws:// or wss://")
        return v

    @field_validator("pallet_name")
    @classmethod
    def validate_pallet_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("CHAIN_PALLET_NAME must not be empty")
        return v


class ReconnectSettings(BaseSettings):
    """Reconnect backoff settings."""

    model_config = SettingsConfigDict(env_prefix="RECONNECT_", extra="ignore")

    base_delay_seconds: float = Field(
        default=1.0,
        alias="RECONNECT_BASE_DELAY_SECONDS",
        gt=0.0,
        le=600.0,
        description="Base delay; attempt n waits base * 2**n",
    )
    max_delay_seconds: float = Field(
        default=30.0,
        alias="RECONNECT_MAX_DELAY_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Upper bound on a single backoff delay",
    )
    max_attempts: int = Field(
        default=5,
        alias="RECONNECT_MAX_ATTEMPTS",
        ge=1,
        le=1000,
        description="Failed reconnects tolerated before the process exits",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> ReconnectSettings:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("RECONNECT_MAX_DELAY_SECONDS must be >= RECONNECT_BASE_DELAY_SECONDS")
        return self


class IndexerSettings(BaseSettings):
    """Block indexing settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    queue_size: int = Field(
        default=1000,
        alias="INDEXER_QUEUE_SIZE",
        ge=1,
        le=1_000_000,
        description="Maximum headers waiting to be indexed",
    )
    failure_policy: Literal["best_effort", "dead_letter"] = Field(
        default="best_effort",
        alias="INDEXER_FAILURE_POLICY",
        description="What to do with a block whose indexing fails",
    )
    max_attempts: int = Field(
        default=3,
        alias="INDEXER_MAX_ATTEMPTS",
        ge=1,
        le=100,
        description="Attempts per block under the dead_letter policy",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="INDEXER_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=600.0,
        description="Delay between attempts under the dead_letter policy",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from nft_auction_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.ws_endpoint)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Each nested BaseSettings needs the env_file too, otherwise it only
    # reads the process environment.
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
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
    reconnect: ReconnectSettings = Field(
        default_factory=lambda: ReconnectSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
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
            "chain": {
                "ws_endpoint": self._redact_url(self.chain.ws_endpoint),
                "pallet_name": self.chain.pallet_name,
            },
            "reconnect": {
                "base_delay_seconds": str(self.reconnect.base_delay_seconds),
                "max_delay_seconds": str(self.reconnect.max_delay_seconds),
                "max_attempts": str(self.reconnect.max_attempts),
            },
            "indexer": {
                "queue_size": str(self.indexer.queue_size),
                "failure_policy": self.indexer.failure_policy,
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

    Returns:
        The Settings instance.

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
