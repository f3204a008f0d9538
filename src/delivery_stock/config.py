"""Application configuration objects."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings used to configure the application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = Field(
        default="Delivery Stock Service",
        description="Human friendly name for the API.",
    )
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./delivery_stock.db",
        description="SQLAlchemy compatible database URL backing the blob table.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for debugging.",
    )
    storage_backend: Literal["database", "filesystem", "memory"] = Field(
        default="database",
        description="Blob store adapter used for snapshots, markers and delivery sets.",
    )
    storage_path: Path = Field(
        default=Path("./storage"),
        description="Root directory for the filesystem blob store.",
    )
    stock_folder: str = Field(
        default="incoming-stock",
        description="Per-account folder holding the stock snapshot and applied markers.",
    )
    deliveries_folder: str = Field(
        default="incoming-deliveries",
        description="Per-account folder holding archived delivery sets.",
    )
    max_snapshot_attempts: int = Field(
        default=3,
        ge=1,
        description="Read-merge-write attempts before a snapshot conflict is reported.",
    )
    log_level: str = Field(default="INFO", description="Root log level.")
    json_logs: bool = Field(
        default=False,
        description="Render log events as JSON instead of console output.",
    )

    @field_validator("database_url")
    @classmethod
    def _validate_sqlite_path(cls, value: str) -> str:
        if value.startswith("sqlite") and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite database URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]
