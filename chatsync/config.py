from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Client handle provider as "package.module:callable"
    CLIENT_PROVIDER: Optional[str] = None

    # Session lifecycle
    START_TIMEOUT_SECONDS: float = 30.0

    # Bulk import pacing between chats
    SYNC_PER_CHAT_LIMIT: int = 10
    SYNC_INTER_CHAT_DELAY_MS: int = 400
    SYNC_ALL_CHATS_LIMIT: int = 50

    # On-demand backfill
    HISTORY_MIN_LOCAL_MESSAGES: int = 5
    HISTORY_FETCH_BATCH: int = 50
    HISTORY_DEFAULT_LIMIT: int = 20

    # Startup catch-up, CATCHUP_MAX_CHATS=0 disables it
    CATCHUP_MAX_CHATS: int = 15
    CATCHUP_MESSAGES_PER_CHAT: int = 10
    CATCHUP_CHAT_DELAY_MS: int = 200

    # Conversation listing
    LIST_CHATS_LIMIT: int = 100
    LIST_CHATS_DELAY_MS: int = 20


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
