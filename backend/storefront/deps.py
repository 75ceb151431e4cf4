"""Dependency providers and settings management."""

import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (conversion outbox)
    REDIS_URL: str = "redis://localhost:6379/0"
    OUTBOX_KEY_PREFIX: str = "conversion_outbox:"
    OUTBOX_MAX_AGE_HOURS: int = 24
    OUTBOX_MAX_ATTEMPTS: int = 3

    # Outbound tracking calls
    TRACKING_HTTP_TIMEOUT_SECONDS: float = 10.0
    CONVERSIONS_API_URL: Optional[str] = None

    # UTMify attribution webhook
    UTMFY_WEBHOOK_URL: Optional[str] = None
    UTMFY_API_KEY: Optional[str] = None

    # Meta pixel / Conversions API
    FACEBOOK_PIXEL_ID: Optional[str] = None
    FACEBOOK_ACCESS_TOKEN: Optional[str] = None
    FACEBOOK_TEST_EVENT_CODE: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v18.0"

    # Payment processor webhook
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    # Honored only outside production, see is_unsigned_webhook_allowed()
    PAYMENT_WEBHOOK_ALLOW_UNSIGNED: bool = False

    # Commerce backend (order creation)
    SHOPIFY_STORE_URL: Optional[str] = None
    SHOPIFY_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2023-10"

    # Pricing: unset means every line item keeps its catalog price
    FIXED_UNIT_PRICE_MINOR_UNITS: Optional[int] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def is_unsigned_webhook_allowed(self) -> bool:
        """Return True when unsigned payment webhooks may be accepted.

        The bypass flag is ignored in production builds.
        """
        if not self.PAYMENT_WEBHOOK_ALLOW_UNSIGNED:
            return False
        if self.is_production:
            logger.error("[SETTINGS] PAYMENT_WEBHOOK_ALLOW_UNSIGNED is set in production - ignoring it")
            return False
        return True


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def load_env_file() -> None:
    """Load environment variables from .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Allows developers to use a local .env file for development
        without risking overwriting production variables.
    """
    from dotenv import load_dotenv

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
