from functools import lru_cache
from threading import Lock
from decimal import Decimal
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for Finledger.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Finledger"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    CORS_ORIGINS: list[str] = []

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_provider_config()
        self._validate_webhook_config()
        self._validate_thresholds()

        return self

    def _validate_database_config(self) -> None:
        """Validates database connectivity settings."""
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")
        if self.DB_POOL_SIZE < 1:
            raise ValueError("DB_POOL_SIZE must be >= 1.")
        if self.DB_MAX_OVERFLOW < 0:
            raise ValueError("DB_MAX_OVERFLOW must be >= 0.")

    def _validate_provider_config(self) -> None:
        """Validates outbound provider call limits."""
        if self.PROVIDER_HTTP_TIMEOUT_SECONDS <= 0:
            raise ValueError("PROVIDER_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.PROVIDER_HTTP_TIMEOUT_SECONDS >= 10:
            raise ValueError("PROVIDER_HTTP_TIMEOUT_SECONDS must be < 10.")
        if self.PROVIDER_RETRY_ATTEMPTS < 1 or self.PROVIDER_RETRY_ATTEMPTS > 5:
            raise ValueError("PROVIDER_RETRY_ATTEMPTS must be between 1 and 5.")
        if self.PROVIDER_SYNC_BUDGET_SECONDS < self.PROVIDER_HTTP_TIMEOUT_SECONDS:
            raise ValueError(
                "PROVIDER_SYNC_BUDGET_SECONDS must be >= PROVIDER_HTTP_TIMEOUT_SECONDS."
            )
        if self.PLAID_ENVIRONMENT not in {"sandbox", "development", "production"}:
            raise ValueError(
                "PLAID_ENVIRONMENT must be one of: sandbox, development, production."
            )

    def _validate_webhook_config(self) -> None:
        """Unsigned webhooks are a local-development convenience only."""
        if self.WEBHOOK_ALLOW_UNSIGNED and self.ENVIRONMENT in {
            ENV_PRODUCTION,
            ENV_STAGING,
        }:
            raise ValueError(
                "WEBHOOK_ALLOW_UNSIGNED must be false in staging/production."
            )
        if self.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS < 30:
            raise ValueError("WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS must be >= 30.")

    def _validate_thresholds(self) -> None:
        """Validates exception and policy threshold ordering."""
        if self.CASH_FLOOR_CRITICAL > self.CASH_FLOOR_WARN:
            raise ValueError("CASH_FLOOR_CRITICAL must be <= CASH_FLOOR_WARN.")
        if self.NEGATIVE_FORECAST_CRITICAL < 0:
            raise ValueError("NEGATIVE_FORECAST_CRITICAL must be >= 0.")
        if self.POLICY_MEDIUM_RISK_ABOVE >= self.POLICY_HIGH_RISK_ABOVE:
            raise ValueError(
                "POLICY_MEDIUM_RISK_ABOVE must be lower than POLICY_HIGH_RISK_ABOVE."
            )
        if self.SNAPSHOT_STALE_AFTER_SECONDS < 1:
            raise ValueError("SNAPSHOT_STALE_AFTER_SECONDS must be >= 1.")

    # Database
    DATABASE_URL: Optional[str] = None  # Required in prod, sqlite in dev/test
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_ECHO: bool = False
    AUTO_CREATE_TABLES: bool = True

    # Snapshot engine
    SNAPSHOT_STALE_AFTER_SECONDS: int = 300

    # Exception surfacing (major currency units)
    CASH_FLOOR_WARN: Decimal = Decimal("10000")
    CASH_FLOOR_CRITICAL: Decimal = Decimal("2500")
    NEGATIVE_FORECAST_CRITICAL: Decimal = Decimal("5000")

    # Execution policy tiers (major currency units)
    POLICY_MEDIUM_RISK_ABOVE: Decimal = Decimal("10000")
    POLICY_HIGH_RISK_ABOVE: Decimal = Decimal("100000")

    # Outbound provider calls
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 8.0
    PROVIDER_RETRY_ATTEMPTS: int = 2
    # Upper bound on one provider's whole poll fetch during sync_all
    PROVIDER_SYNC_BUDGET_SECONDS: float = 20.0

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_API_BASE: str = "https://api.stripe.com"
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Plaid
    PLAID_CLIENT_ID: Optional[str] = None
    PLAID_SECRET: Optional[str] = None
    PLAID_ACCESS_TOKEN: Optional[str] = None
    PLAID_ITEM_ID: Optional[str] = None
    PLAID_ENVIRONMENT: str = "sandbox"
    PLAID_WEBHOOK_SECRET: Optional[str] = None

    # QuickBooks Online
    QBO_ACCESS_TOKEN: Optional[str] = None
    QBO_REALM_ID: Optional[str] = None
    QBO_BASE_URL: str = "https://quickbooks.api.intuit.com"
    QBO_WEBHOOK_VERIFIER_TOKEN: Optional[str] = None

    # Gusto
    GUSTO_ACCESS_TOKEN: Optional[str] = None
    GUSTO_COMPANY_UUID: Optional[str] = None
    GUSTO_BASE_URL: str = "https://api.gusto-demo.com"
    GUSTO_WEBHOOK_SECRET: Optional[str] = None

    # Webhooks
    WEBHOOK_ALLOW_UNSIGNED: bool = Field(
        default=False, description="Accept unsigned webhooks (local development only)"
    )
    WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """
        True only when ENVIRONMENT is explicitly set to 'production'.
        Staging/Development use DEBUG=False but are NOT 'production'.
        """
        return self.ENVIRONMENT == ENV_PRODUCTION
