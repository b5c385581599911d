from functools import lru_cache
from typing import Literal, Optional

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

    # Shared secret expected in the X-API-Key header - required
    API_KEY: str

    LOG_LEVEL: str = "INFO"

    # Message store
    DATABASE_URL: str = "sqlite:///./sms_gateway.db"

    # Listeners
    HOST: str = "0.0.0.0"
    PORT: int = 8888
    EVENT_PORT: Optional[int] = None

    # Send orchestration
    SEND_MODE: Literal["async", "sync"] = "async"
    TRANSPORT: Literal["loopback", "http"] = "loopback"
    TRANSPORT_URL: Optional[str] = None
    TRANSPORT_TIMEOUT_SECONDS: float = 30.0
    SHUTDOWN_GRACE_SECONDS: float = 10.0

    # Platform capabilities
    SEND_PERMISSION: bool = True
    READ_PERMISSION: bool = True

    # Optional HMAC secret for inbound message ingestion
    WEBHOOK_SECRET: Optional[str] = None

    # Event channel
    EVENT_SEND_TIMEOUT_SECONDS: float = 5.0
    EVENT_QUEUE_SIZE: int = 256

    @property
    def event_port(self) -> int:
        """Port of the event channel, one above the HTTP port unless set."""
        if self.EVENT_PORT is not None:
            return self.EVENT_PORT
        return self.PORT + 1


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
