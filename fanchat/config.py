"""
Application configuration using environment variables.
"""
import os
import secrets
from functools import lru_cache
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Fanchat API"
    debug: bool = False
    environment: str = "development"

    # Security (tokens are issued by the identity provider, we only verify them)
    secret_key: str = os.getenv("SECRET_KEY", secrets.token_urlsafe(32))
    algorithm: str = "HS256"

    # Database
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./fanchat.db")

    # CORS
    cors_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Creator identity
    creator_uid: str = "creator"
    creator_emails: List[str] = []

    # Chat sessions
    early_join_margin_minutes: int = 5
    default_session_minutes: int = 15
    max_session_minutes: int = 120

    # Messages
    preview_chars: int = 80
    notification_preview_chars: int = 60
    message_window: int = 200
    conversation_list_limit: int = 100
    message_rate_limit: str = "30/minute"

    # Locked media
    min_unlock_price_cents: int = 100
    max_unlock_price_cents: int = 50000

    # Payment collaborator
    payment_webhook_secret: str = os.getenv("PAYMENT_WEBHOOK_SECRET", "")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Validate secrets on startup
settings = get_settings()
if settings.environment == "production":
    if "SECRET_KEY" not in os.environ:
        raise ValueError(
            "SECRET_KEY must be set in production! "
            "It must match the key the identity provider signs tokens with."
        )
    if not settings.payment_webhook_secret:
        raise ValueError("PAYMENT_WEBHOOK_SECRET must be set in production!")
