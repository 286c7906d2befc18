"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (BillingConfig, MidtransConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    BILLING__CURRENCY=IDR
    BILLING__FLAG_CACHE_TTL_SECONDS=60
    MIDTRANS__IS_PRODUCTION=true
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingConfig(BaseModel):
    """Subscription, usage and invoicing parameters."""

    currency: str = "IDR"
    trial_days: int = 14
    # Invoices raised by the recurring sweep
    invoice_due_days: int = 7
    # Invoices raised alongside a gateway checkout
    payment_invoice_due_days: int = 1
    flag_cache_ttl_seconds: float = 300.0
    near_limit_threshold: float = 0.85
    # Approximation: every month is treated as 30 days for proration
    proration_days_per_month: int = 30
    plan_change_effective_days: int = 1

    plans_table: str = "subscription_plans"
    subscriptions_table: str = "user_subscriptions"
    usage_table: str = "feature_usage"
    feature_flags_table: str = "feature_flags"
    invoices_table: str = "billing_invoices"
    payments_table: str = "billing_payments"
    transactions_table: str = "billing_transactions"
    plan_change_table: str = "plan_change_requests"
    notifications_table: str = "subscription_notifications"


class MidtransConfig(BaseModel):
    """Midtrans payment gateway configuration."""

    server_key: str = ""
    client_key: str = ""
    is_production: bool = False
    # Public frontend URL used for Snap finish/unfinish/error callbacks
    app_url: str = "http://localhost:3000"
    request_timeout_seconds: float = 30.0
    payment_expiry_days: int = 1

    @property
    def snap_base_url(self) -> str:
        if self.is_production:
            return "https://app.midtrans.com"
        return "https://app.sandbox.midtrans.com"

    @property
    def api_base_url(self) -> str:
        if self.is_production:
            return "https://api.midtrans.com"
        return "https://api.sandbox.midtrans.com"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Shared secret the scheduler sends on sweep endpoints
    cron_secret: str = ""

    # App Settings
    debug: bool = False
    environment: str = "development"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    midtrans: MidtransConfig = Field(default_factory=MidtransConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
