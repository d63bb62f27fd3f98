from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "ShipFree"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    site_url: str = "http://localhost:3000"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5
    database_auto_create_schema: bool = False

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_signature_tolerance_seconds: int = 300

    # LemonSqueezy
    lemonsqueezy_api_key: str | None = None
    lemonsqueezy_store_id: str | None = None
    lemonsqueezy_webhook_secret: str | None = None
    lemonsqueezy_api_base: str = "https://api.lemonsqueezy.com/v1"

    # Email
    email_from: str | None = None
    email_smtp_url: str | None = None
    email_disable_tls: bool = False
    email_timeout_seconds: float = 15.0
    email_operator_to: str | None = None

    # Reconciliation
    effect_max_attempts: int = 3
    effect_base_delay_seconds: float = 0.5
    effect_max_delay_seconds: float = 5.0
    idempotency_claim_ttl_seconds: int = 300
    payment_failed_final_attempt: int = 4

    # Auth
    auth_user_header: str = "X-User-Id"

    # Security
    cors_origins: list[str] = []
    trusted_hosts: list[str] = ["*"]

    # Sentry
    sentry_dsn: str | None = None

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "billing"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125
    metrics_schema_version: str = "billing.v1"

    @property
    def operator_recipients(self) -> list[str]:
        """Return the comma separated operator alert addresses."""
        if not self.email_operator_to:
            return []
        return [entry.strip() for entry in self.email_operator_to.split(",") if entry.strip()]

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
