from functools import lru_cache
from typing import List

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

    # Database Configuration - required from .env
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Rooms are reference data, seeded at startup (JSON list in env)
    SEED_ROOMS: List[str] = ["general"]

    # Ingestion limits
    MAX_MESSAGE_LENGTH: int = 500
    MAX_USERNAME_LENGTH: int = 50
    MAX_CLIENT_MESSAGE_ID_LENGTH: int = 128
    HISTORY_DEFAULT_LIMIT: int = 50

    # Connection registry
    CONNECTION_TTL_SECONDS: int = 60 * 60 * 24
    CONNECTION_REAP_INTERVAL_SECONDS: float = 300.0

    # Change feed
    FEED_BATCH_SIZE: int = 10
    FEED_POLL_INTERVAL_SECONDS: float = 1.0
    FANOUT_WORKER_ENABLED: bool = True

    # Fanout delivery
    FANOUT_MAX_WIDTH: int = 256
    DELIVERY_TIMEOUT_SECONDS: float = 5.0
    DELIVERY_MAX_ATTEMPTS: int = 3
    DELIVERY_BACKOFF_SECONDS: float = 0.1
    DELIVERY_BACKOFF_MAX_SECONDS: float = 2.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
