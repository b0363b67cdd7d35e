from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./msgsync.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Messaging provider
    PROVIDER_BASE_URL: str = "https://api.whatsiplus.com"
    PROVIDER_TOKEN: Optional[str] = None
    PROVIDER_PHONE_NUMBER: Optional[str] = None
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Inbox synchronization
    POLL_INTERVAL_SECONDS: float = 5.0
    BACKFILL_DELAY_SECONDS: float = 3.0
    BACKFILL_MAX_PAGES: int = 5
    BACKFILL_PAGE_DELAY_SECONDS: float = 0.2
    DEDUP_WINDOW_SECONDS: int = 300

    # Owner used when a request carries no X-User-ID header
    DEFAULT_USER_ID: str = "default"
    # Start a sync session for this user when the app boots
    SYNC_AUTOSTART_USER_ID: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
