"""Centralized settings for the notification service.

Uses pydantic-settings to load from environment variables (prefixed
GNOTIFY_) or an optional .env file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    # --- Dispatch ---
    worker_count: int = 2
    queue_poll_interval: float = 0.5
    lease_ttl_seconds: float = 30.0
    gateway_timeout_seconds: float = 10.0

    # --- Retry policy ---
    default_max_attempts: int = 5
    attempts_per_channel: int = 1
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 3600.0
    backoff_multiplier: float = 2.0

    # --- Escalation ---
    escalation_poll_interval: float = 30.0
    escalation_priority_boost: int = 50

    # --- Offline buffer ---
    offline_db_url: str = "sqlite:///guardian_notify_offline.db"

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "console"
    service_name: str = "guardian-notify"

    model_config = {"env_prefix": "GNOTIFY_", "env_file": ".env", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
