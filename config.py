"""
Centralized configuration using Pydantic BaseSettings.
Secrets are optional at import time; components that need them fail when used.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized subscription states stored on the user snapshot and the ledger
SUBSCRIPTION_FREE = "free"
SUBSCRIPTION_PREMIUM = "premium"
SUBSCRIPTION_PAST_DUE = "past_due"
SUBSCRIPTION_CANCELLED = "cancelled"

ROLE_USER = "user"
ROLE_CHEF = "chef"
ROLE_ADMIN = "admin"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Token issuer
    jwt_access_secret: Optional[str] = Field(default=None, alias="JWT_ACCESS_SECRET")
    jwt_refresh_secret: Optional[str] = Field(default=None, alias="JWT_REFRESH_SECRET")
    access_token_ttl_minutes: int = Field(default=15, alias="ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = Field(default=30, alias="REFRESH_TOKEN_TTL_DAYS")
    refresh_token_rotation: bool = Field(default=True, alias="REFRESH_TOKEN_ROTATION")

    # Credential store
    password_hash_rounds: int = Field(default=3, alias="PASSWORD_HASH_ROUNDS")
    password_min_length: int = Field(default=8, alias="PASSWORD_MIN_LENGTH")
    email_verification_ttl_hours: int = Field(default=24, alias="EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = Field(default=10, alias="PASSWORD_RESET_TTL_MINUTES")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./app.db", alias="DATABASE_URL")

    # Paystack billing configuration
    paystack_secret_key: Optional[str] = Field(default=None, alias="PAYSTACK_SECRET_KEY")
    paystack_base_url: str = Field(default="https://api.paystack.co", alias="PAYSTACK_BASE_URL")
    paystack_plan_monthly: Optional[str] = Field(default=None, alias="PAYSTACK_PLAN_MONTHLY")
    paystack_plan_yearly: Optional[str] = Field(default=None, alias="PAYSTACK_PLAN_YEARLY")
    paystack_currency: str = Field(default="GHS", alias="PAYSTACK_CURRENCY")
    paystack_timeout_seconds: float = Field(default=10.0, alias="PAYSTACK_TIMEOUT_SECONDS")
    # Prices in minor units (pesewas); the gateway plan amount takes precedence
    subscription_price_monthly_minor: int = Field(default=2000, alias="SUBSCRIPTION_PRICE_MONTHLY")
    subscription_price_yearly_minor: int = Field(default=20000, alias="SUBSCRIPTION_PRICE_YEARLY")

    # Webhook / subscription lifecycle
    webhook_idempotency_ttl_hours: int = Field(default=72, alias="WEBHOOK_IDEMPOTENCY_TTL_HOURS")
    subscription_grace_period_days: int = Field(default=3, alias="SUBSCRIPTION_GRACE_PERIOD_DAYS")
    grace_sweep_interval_seconds: float = Field(default=3600.0, alias="GRACE_SWEEP_INTERVAL_SECONDS")
    user_lock_timeout_seconds: float = Field(default=10.0, alias="USER_LOCK_TIMEOUT_SECONDS")

    # Auth endpoint rate limiting
    auth_rate_limit_attempts: int = Field(default=5, alias="AUTH_RATE_LIMIT_ATTEMPTS")
    auth_rate_limit_window_seconds: int = Field(default=900, alias="AUTH_RATE_LIMIT_WINDOW_SECONDS")

    # Frontend and media
    client_url: str = Field(default="http://localhost:5173", alias="CLIENT_URL")
    media_base_url: Optional[str] = Field(default=None, alias="MEDIA_BASE_URL")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    @property
    def is_production(self) -> bool:
        return bool(self.env and self.env.lower() == "production")


# Instantiate settings object
settings = Settings()
