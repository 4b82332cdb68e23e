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

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - the Meta app secret used for X-Hub-Signature-256
    WEBHOOK_SECRET: str

    # Token echoed back during the GET /webhook subscription handshake
    WHATSAPP_VERIFY_TOKEN: Optional[str] = None

    # Cloud API credentials for the outbound send client
    WHATSAPP_TOKEN: Optional[str] = None
    WHATSAPP_PHONE_ID: Optional[str] = None
    WHATSAPP_API_VERSION: str = "v20.0"

    # Send client transport behaviour
    WHATSAPP_TIMEOUT: float = 30.0
    WHATSAPP_RETRY_TIMES: int = 3
    WHATSAPP_RETRY_DELAY_MS: int = 100

    # Mark inbound messages as read once they are reconciled
    WHATSAPP_MARK_AS_READ: bool = False

    # Background reconciliation retry policy
    RECONCILE_MAX_ATTEMPTS: int = 3
    RECONCILE_RETRY_BACKOFF: float = 0.5


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
