from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Inbox service settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Required
    DATABASE_URL: str
    LOG_LEVEL: str
    WEBHOOK_SECRET: str

    # Reconciliation tunables
    DEDUP_WINDOW_SECONDS: int = 120
    CONTENT_PREFIX_LENGTH: int = 160
    HISTORY_MATCH_TOLERANCE_MS: int = 10000

    # Legacy booking_history is truncated to this many entries on write
    HISTORY_MAX_ENTRIES: int = 50

    CLEANUP_BATCH_SIZE: int = 50
    SUBSCRIBER_QUEUE_SIZE: int = 100


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, so .env is read once per process."""
    return Settings()


settings = get_settings()
