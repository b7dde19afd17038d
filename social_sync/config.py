from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env vars take precedence over the .env file
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./social_sync.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Facebook app credentials; the app secret also signs webhook deliveries
    FACEBOOK_APP_ID: Optional[str] = None
    FACEBOOK_APP_SECRET: Optional[str] = None
    FACEBOOK_REDIRECT_URI: str = "http://localhost:8000/auth/facebook/callback"
    FACEBOOK_GRAPH_URL: str = "https://graph.facebook.com/v18.0"

    # Webhook subscription handshake token
    WEBHOOK_VERIFY_TOKEN: Optional[str] = None

    # Where the OAuth callback sends the browser back to
    ADMIN_UI_URL: str = "http://localhost:3000/admin"

    # Connection lifecycle
    OAUTH_STATE_TTL_SECONDS: int = 600
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60

    # Number of recent messages per conversation returned by the state endpoint
    STATE_MESSAGE_WINDOW: int = 50

    # Outbound HTTP behaviour
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_RETRIES: int = 3

    # Alert channel for unrecoverable sync failures (log-only when unset)
    ALERT_WEBHOOK_URL: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
