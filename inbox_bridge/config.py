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

    # Main database holding the companies table - required
    DATABASE_URL: str

    # Per-tenant database URL, must contain "{db_name}" - required
    TENANT_DATABASE_URL_TEMPLATE: str

    LOG_LEVEL: str = "INFO"

    # Tenant connection pool
    TENANT_SCHEMA_AUTOCREATE: bool = False
    TENANT_POOL_MAX_SIZE: int = 0  # 0 = unbounded

    # Webhook batch limits
    WEBHOOK_MAX_CONTACTS: int = 100
    WEBHOOK_MAX_MESSAGES: int = 100
    WEBHOOK_MAX_BODY_BYTES: int = 1024 * 1024

    # Outbound calls
    BOT_CALLBACK_TIMEOUT_SECONDS: float = 30.0
    MESSAGING_API_BASE_URL: str = "https://api.wazzup24.com/v3"
    MESSAGING_TIMEOUT_SECONDS: float = 30.0

    PLACEHOLDER_EMAIL_DOMAIN: str = "wazzup.local"

    # Externally reachable base URL used when registering webhooks with the
    # provider; the request's own base URL is used when unset
    PUBLIC_URL: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
