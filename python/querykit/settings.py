"""Configuration loaded from the environment using Pydantic Settings."""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

IsolationLevelName = Literal["READ UNCOMMITTED", "READ COMMITTED", "REPEATABLE READ", "SERIALIZABLE"]


class EngineSettings(BaseSettings):
    """Connection and batching settings.

    Every field can be set through a ``QUERYKIT_``-prefixed environment
    variable; the database URL is also read from ``DATABASE_URL``.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUERYKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    database_url: str = Field(
        default="postgresql://localhost:5432/postgres",
        validation_alias=AliasChoices("QUERYKIT_DATABASE_URL", "DATABASE_URL"),
    )

    # Pool
    min_connections: int = Field(default=1, ge=0)
    max_connections: int = Field(default=10, ge=1)
    command_timeout: float | None = None  # seconds, enforced by the driver

    # IN (...) lookups and multi-row inserts
    batch_size: int = Field(default=1000, ge=1)

    # None leaves the server default in place
    isolation_level: IsolationLevelName | None = None


_settings: EngineSettings | None = None


def get_settings() -> EngineSettings:
    """Get or create the settings instance."""
    global _settings
    if _settings is None:
        _settings = EngineSettings()
    return _settings


def reset_settings() -> None:
    """Forget the cached settings (used by tests)."""
    global _settings
    _settings = None
