from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict

VERSION = "0.1.0"


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Vercel deployment API (token is only required for rollback operations)
    vercel_token: str = ""
    vercel_project_id: str = ""
    vercel_team_id: str = ""
    vercel_api_url: str = "https://api.vercel.com"

    # Production alias checked after a rollback when the promotion response has no URL
    production_url: str = ""

    # Health sampling
    health_check_path: str = "/health"
    health_check_timeout_ms: int = 60_000  # monitor window length
    health_check_interval_ms: int = 5_000
    error_threshold_percent: float = 5.0
    response_time_threshold_ms: int = 5_000
    request_timeout_seconds: float = 30.0

    # Rollback
    rollback_timeout_ms: int = 300_000
    max_retries: int = 3
    settle_delay_ms: int = 10_000  # wait for alias / DNS propagation after promotion
    verify_window_ms: int = 30_000
    history_limit: int = 10

    # Chat webhook (optional, empty string means disabled)
    notify_webhook_url: str = ""

    # SMTP / Email (optional, empty = email disabled)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    notify_recipient_email: str = ""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
