"""Environment-driven settings for the sync engine."""

import os
from dataclasses import dataclass

DEFAULT_PAGE_SIZE = 50
DEFAULT_CREDENTIALS_DATABASE_URL = "sqlite+aiosqlite:///./chat_sync.db"
DEFAULT_CREDENTIALS_KEY = "chat-sync-auth-token"
DEFAULT_PRESENCE_CHANNEL = "online-status"


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass(frozen=True)
class ReconnectSettings:
    """Change feed reconnection policy parameters"""

    enabled: bool = True
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass(frozen=True)
class SyncSettings:
    """Settings shared by every component of the engine"""

    environment: str = "development"
    log_level: str = "INFO"
    page_size: int = DEFAULT_PAGE_SIZE
    credentials_database_url: str = DEFAULT_CREDENTIALS_DATABASE_URL
    credentials_key: str = DEFAULT_CREDENTIALS_KEY
    presence_channel: str = DEFAULT_PRESENCE_CHANNEL
    media_bucket: str = "chat-media"
    avatar_bucket: str = "avatarsbucket"
    notification_limit: int = 50
    reconnect: ReconnectSettings = ReconnectSettings()


def load_settings() -> SyncSettings:
    """Build settings from environment variables"""
    return SyncSettings(
        environment=os.getenv("ENVIRONMENT", "development").lower(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        page_size=_get_env_int("CHAT_PAGE_SIZE", DEFAULT_PAGE_SIZE),
        credentials_database_url=os.getenv(
            "CREDENTIALS_DATABASE_URL", DEFAULT_CREDENTIALS_DATABASE_URL
        ),
        credentials_key=os.getenv("CREDENTIALS_KEY", DEFAULT_CREDENTIALS_KEY),
        presence_channel=os.getenv("PRESENCE_CHANNEL", DEFAULT_PRESENCE_CHANNEL),
        media_bucket=os.getenv("MEDIA_BUCKET", "chat-media"),
        avatar_bucket=os.getenv("AVATAR_BUCKET", "avatarsbucket"),
        notification_limit=_get_env_int("NOTIFICATION_LIMIT", 50),
        reconnect=ReconnectSettings(
            enabled=_get_env_bool("FEED_RECONNECT", True),
            max_attempts=_get_env_int("FEED_RECONNECT_MAX_ATTEMPTS", 5),
            base_delay=_get_env_float("FEED_RECONNECT_BASE_DELAY", 1.0),
            max_delay=_get_env_float("FEED_RECONNECT_MAX_DELAY", 30.0),
        ),
    )
