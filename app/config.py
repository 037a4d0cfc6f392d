"""Application configuration and settings."""
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the application pipeline services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./data/app.db"
    data_directory: Path = Path("data")

    log_level: str = "INFO"
    log_json: bool = True

    default_max_retries: int = 3
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 3600.0

    submission_timeout_seconds: float = 60.0
    lease_seconds: float = 300.0

    worker_autostart: bool = False
    worker_concurrency: int = 3
    worker_batch_size: int = 20
    worker_poll_interval_seconds: float = 15.0

    content_cache_ttl_seconds: int = 3600

    submission_backend: str = "playwright"
    playwright_headless: bool = True
    webhook_url: str | None = None
    webhook_token: str | None = None

    # Profile defaults applied when a profile omits an option
    default_minimum_quality_score: float = 0.7
    default_minimum_personalization_score: float = 0.8
    default_minimum_ats_compatibility: float = 0.9
    default_auto_submit_threshold: float = 0.95
    default_approval_required: bool = True
    default_daily_limit: int = 10
    default_weekly_limit: int = 50
    default_monthly_limit: int = 200

    @model_validator(mode="after")
    def _check_lease_covers_timeout(self) -> "Settings":
        if self.lease_seconds <= self.submission_timeout_seconds:
            raise ValueError("lease_seconds must exceed submission_timeout_seconds")
        if self.submission_backend not in {"playwright", "webhook"}:
            raise ValueError(f"Unknown submission backend: {self.submission_backend}")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    settings = Settings()
    settings.data_directory.mkdir(parents=True, exist_ok=True)
    return settings


settings = get_settings()
