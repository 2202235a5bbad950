"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=3000, description="Port to bind to")

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis (per-user update lock)
    REDIS_URL: str = Field(default="")
    USER_LOCK_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Expiry of a held per-user lock",
    )
    USER_LOCK_WAIT_SECONDS: float = Field(
        default=5.0,
        description="How long an event waits for a per-user lock before failing",
    )

    # Stripe
    STRIPE_SECRET_KEY: str = Field(default="")
    STRIPE_WEBHOOK_SECRET: str = Field(default="")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = Field(default=300)
    STRIPE_PRO_PLAN_PRICE_ID: str = Field(default="")
    STRIPE_TRIAL_PERIOD_DAYS: int = Field(default=1)

    # App Configuration
    CHECKOUT_SUCCESS_URL: Optional[str] = Field(default=None)
    ALLOWED_ORIGINS: str = Field(default="*")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def user_lock_enabled(self) -> bool:
        """Per-user locking needs Redis."""
        return bool(self.REDIS_URL)

    @field_validator("STRIPE_WEBHOOK_TOLERANCE_SECONDS")
    @classmethod
    def validate_webhook_tolerance(cls, v: int) -> int:
        """A zero or negative window would disable replay protection."""
        if v <= 0:
            raise ValueError("STRIPE_WEBHOOK_TOLERANCE_SECONDS must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
