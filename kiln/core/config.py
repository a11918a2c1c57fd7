"""
Application configuration

SECURITY: Defaults are fail-safe for production.
- DEBUG defaults to False
- REDIS_URL and Stripe secrets are required in production
- Runtime validation catches insecure configurations
"""
import json
import os
import logging
from typing import List, Union
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Default CORS origins
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "https://kilnandclay.pl",
    "https://www.kilnandclay.pl",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # App - defaults are PRODUCTION safe
    APP_NAME: str = "Kiln & Clay"
    DEBUG: bool = False  # SECURE DEFAULT: off in production
    ENVIRONMENT: str = "production"  # Explicit env marker
    SITE_URL: str = "https://kilnandclay.pl"

    # CORS - accepts JSON array or comma-separated string
    CORS_ORIGINS: Union[str, List[str]] = DEFAULT_CORS_ORIGINS

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            if not v or v.strip() == "":
                return DEFAULT_CORS_ORIGINS
            # Try JSON first
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            # Fallback to comma-separated
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Redis - single source of truth for stock counters and reservations
    REDIS_URL: str = ""

    # Stripe Payments
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "pln"
    CHECKOUT_ALLOWED_COUNTRIES: List[str] = ["PL", "CZ", "DE", "SK", "AT"]

    # Storyblok CMS
    STORYBLOK_TOKEN: str = ""  # CDN (read) token
    STORYBLOK_MANAGEMENT_TOKEN: str = ""
    STORYBLOK_SPACE_ID: str = ""
    STORYBLOK_ORDERS_FOLDER_ID: str = ""
    STORYBLOK_CDN_BASE: str = "https://api.storyblok.com/v2/cdn"
    STORYBLOK_MANAGEMENT_BASE: str = "https://mapi.storyblok.com/v1"
    STORYBLOK_TIMEOUT_SECONDS: float = 10.0

    # Admin stock sync
    ADMIN_SYNC_TOKEN: str = ""

    # Stock reservations
    RESERVATION_TTL_MINUTES: int = 30
    RESERVATION_RECORD_GRACE_HOURS: int = 24  # Record outlives its schedule entry
    PROCESSED_EVENT_TTL_DAYS: int = 30  # Outlasts Stripe's retry window

    # Stock Cleanup Scheduler
    STOCK_CLEANUP_INTERVAL_MINUTES: int = 5
    STOCK_CLEANUP_ENABLED: bool = True
    RECLAIM_BATCH_SIZE: int = 100

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "100/minute"
    RATE_LIMIT_CHECKOUT: str = "10/minute"

    @property
    def reservation_ttl_seconds(self) -> int:
        return self.RESERVATION_TTL_MINUTES * 60

    @property
    def reservation_record_ttl_seconds(self) -> int:
        return self.reservation_ttl_seconds + self.RESERVATION_RECORD_GRACE_HOURS * 3600

    @property
    def processed_event_ttl_seconds(self) -> int:
        return self.PROCESSED_EVENT_TTL_DAYS * 24 * 3600

    @model_validator(mode="after")
    def validate_production_config(self):
        """Runtime validation to catch insecure production configurations."""
        if self.ENVIRONMENT == "production":
            errors = []

            if self.DEBUG:
                errors.append(
                    "DEBUG=True is forbidden in production. "
                    "Set DEBUG=false or ENVIRONMENT=development"
                )

            # No local fallback state: the ledger lives in Redis only
            if not self.REDIS_URL:
                errors.append("REDIS_URL is required in production.")

            if not self.STRIPE_SECRET_KEY:
                errors.append("STRIPE_SECRET_KEY is required in production.")
            if not self.STRIPE_WEBHOOK_SECRET:
                errors.append("STRIPE_WEBHOOK_SECRET is required in production.")

            for origin in self.CORS_ORIGINS:
                if origin == "*":
                    errors.append("Wildcard '*' CORS origin is forbidden in production")
                elif "localhost" in origin or "127.0.0.1" in origin:
                    errors.append(f"Localhost CORS origin '{origin}' is forbidden in production")

            if errors:
                raise ValueError(
                    "PRODUCTION CONFIGURATION VIOLATIONS:\n" + "\n".join(f"  - {e}" for e in errors)
                )

        return self


# Try to load settings, provide helpful error on failure
try:
    settings = Settings()
except Exception:
    # In development, allow fallback defaults
    if os.getenv("ENVIRONMENT", "development") == "development":
        logger.warning(
            "Settings validation failed, using development defaults. "
            "Set REDIS_URL and Stripe keys in .env file."
        )
        os.environ.setdefault("ENVIRONMENT", "development")
        os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
        settings = Settings()
    else:
        raise
