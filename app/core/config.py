# app/core/config.py
from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,  # Environment vars are uppercase
        extra="ignore",      # Ignore unexpected vars instead of raising
    )

    # Core application settings
    DATABASE_URL: str
    HOST: str = "0.0.0.0"
    PORT: int = 8101
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    APP_URL: str
    FRONTEND_APP_URL: str | None = None
    LOG_FILE: str | None = None

    # CORS settings
    ALLOWED_ORIGINS: list[str] = ["*"]  # In production, specify actual origins
    ALLOW_CREDENTIALS: bool = True
    ALLOWED_METHODS: list[str] = ["*"]
    ALLOWED_HEADERS: list[str] = ["*"]

    # JWT settings (tokens are issued by the auth provider, we only verify them)
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 43200  # 30 days

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLIC_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID_FIRST_SUBJECT: str = ""
    STRIPE_PRICE_ID_ADDITIONAL_SUBJECT: str = ""

    # Per-subject pricing
    FIRST_SUBJECT_PRICE: Decimal = Decimal("4.99")
    ADDITIONAL_SUBJECT_PRICE: Decimal = Decimal("2.49")


def _validate_settings(settings: Settings) -> None:
    """Validate critical application settings."""
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is required")
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET is required")
    if settings.FIRST_SUBJECT_PRICE < 0 or settings.ADDITIONAL_SUBJECT_PRICE < 0:
        raise ValueError("Subject prices cannot be negative")

    # Environment-specific validations
    if settings.ENVIRONMENT == "production" and settings.DEBUG:
        print("WARNING: DEBUG is enabled in production. Consider setting DEBUG=False.")
    # In production, require explicit FRONTEND_APP_URL so we never fall back to localhost
    if settings.ENVIRONMENT == "production" and not settings.FRONTEND_APP_URL:
        raise ValueError("FRONTEND_APP_URL is required in production")
    # Unsigned webhooks are never accepted, so production must know the secret
    if settings.ENVIRONMENT == "production" and not settings.STRIPE_WEBHOOK_SECRET:
        raise ValueError("STRIPE_WEBHOOK_SECRET is required in production")


# Initialize settings with error handling
try:
    settings = Settings()
    _validate_settings(settings)
except Exception as e:
    print(f"Error initializing settings: {e}")
    raise
