from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    REDIS_URL: str = "redis://localhost:6379/0"
    REALTIME_CHANNEL_PREFIX: str = "realtime"

    SEND_QUEUE_KEY: str = "lingualink_message_queue"
    SEND_MAX_RETRIES: int = 3

    CHANNEL_MAX_RETRIES: int = 3
    PRESENCE_MAX_RETRIES: int = 5

    BACKOFF_BASE_SECONDS: float = 1.0
    BACKOFF_MAX_SECONDS: float = 30.0
    BACKOFF_JITTER: float = 0.0

    SUBSCRIBE_TIMEOUT_SECONDS: float = 15.0
    PRESENCE_JOIN_TIMEOUT_SECONDS: float = 10.0

    PRESENCE_CHANNEL: str = "global"
    PRESENCE_HEARTBEAT_SECONDS: float = 30.0
    PRESENCE_STALE_SECONDS: float = 120.0
    LAST_SEEN_ONLINE_MINUTES: int = 5

    MESSAGES_PER_PAGE: int = 50
    DEFAULT_LANGUAGE: str = "en"

    EVENT_LOG_CAPACITY: int = 500

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
