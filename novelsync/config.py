"""
Configuration settings for the novelsync client.

Uses environment variables (prefix ``NOVELSYNC_``) with sensible defaults
for development.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NOVELSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = Field(default=False)

    # API
    api_base_url: str = Field(default="http://localhost:3001/api")
    request_timeout: float = 30.0
    max_retry_attempts: int = Field(default=3, ge=0)

    # Token refresh
    proactive_refresh_enabled: bool = True
    proactive_refresh_buffer_seconds: int = 300  # 5 min before expiry
    lifecycle_refresh_buffer_seconds: int = 600  # launch / foreground checks
    refresh_min_interval_seconds: float = 10.0

    # Sync
    history_page_limit: int = Field(default=1000, gt=0)
    sync_interval_seconds: float = 300.0  # background full sync

    # Chapter cache
    cache_count_limit: int = Field(default=10, gt=0)
    cache_cost_limit: int = Field(default=50 * 1024 * 1024, gt=0)

    # Reading session tracker
    tracker_tick_seconds: float = 0.1
    tracker_flush_interval_seconds: float = 30.0
    tracker_max_session_seconds: float = 2 * 60 * 60

    # Local storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".novelsync")
    db_name: str = "novelsync.db"
    db_timeout_seconds: float = 30.0
    db_connect_attempts: int = Field(default=5, gt=0)  # while "database is locked"
    db_connect_backoff_seconds: float = 0.1  # doubled per attempt

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoint paths always start with a slash."""
        return v.rstrip("/")

    @property
    def db_path(self) -> Path:
        """Full path to the local database, creating the data directory."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir / self.db_name


@lru_cache
def get_settings() -> ClientSettings:
    """Get cached settings instance."""
    return ClientSettings()
