"""Base configuration settings."""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_url() -> str:
    storage_dir = Path.home() / ".drms" / "offline"
    return f"sqlite:///{storage_dir / 'sync.db'}"


class Settings(BaseSettings):
    """Application settings.

    Every value can be overridden with a ``DRMS_SYNC_``-prefixed environment
    variable or an entry in ``.env``.
    """

    model_config = SettingsConfigDict(
        env_prefix="DRMS_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "DRMS Offline Sync"
    environment: str = Field(
        default_factory=lambda: os.getenv("ENVIRONMENT", "development")
    )
    log_level: str = "INFO"
    log_format: str = "console"

    # Local store
    database_url: str = Field(default_factory=_default_database_url)
    queue_capacity: int = Field(default=5000, ge=1)
    completed_retention_hours: int = Field(default=72, ge=0)

    # Transport
    api_base_url: str = "http://localhost:3000/api/v1"
    api_key: Optional[str] = None
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    sync_batch_size: int = Field(default=50, ge=1, le=100)
    pull_page_limit: int = Field(default=100, ge=1, le=1000)

    # Retry policy
    max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_seconds: float = Field(default=30.0, ge=0)
    retry_exponential_base: float = Field(default=2.0, ge=1)
    retry_max_delay_seconds: float = Field(default=900.0, ge=0)
    retry_jitter: bool = False

    # Scheduling
    auto_sync_enabled: bool = True
    auto_sync_interval_minutes: float = Field(default=5.0, gt=0)
    accelerated_retry_seconds: float = Field(default=30.0, gt=0)
    settle_delay_seconds: float = Field(default=2.0, ge=0)
    connectivity_check_interval_seconds: float = Field(default=30.0, gt=0)

    # Conflicts
    conflict_strategy: str = "last_write_wins"

    # Operator API
    api_host: str = "127.0.0.1"
    api_port: int = 8700

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only console and json renderers exist."""
        v = v.lower()
        if v not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return v

    @field_validator("conflict_strategy")
    @classmethod
    def validate_conflict_strategy(cls, v: str) -> str:
        """Restrict to the strategies the resolver implements."""
        v = v.lower()
        if v not in ("last_write_wins", "manual"):
            raise ValueError(
                "conflict_strategy must be 'last_write_wins' or 'manual'"
            )
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoints are joined with a leading slash."""
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check whether running in production or staging."""
        return self.environment.lower() in ("production", "staging")
