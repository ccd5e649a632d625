"""Runtime settings for webhook reconciliation, read from ORDERSYNC_* env vars."""

from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrderSyncConfig(BaseSettings):
    """Runtime config for webhook reconciliation."""

    model_config = SettingsConfigDict(env_prefix="ORDERSYNC_")

    environment: str = "development"

    square_webhook_secret: str | None = None
    square_webhook_secret_sandbox: str | None = None
    square_notification_url: str | None = None
    square_max_event_age_seconds: int | None = None
    shippo_webhook_secret: str | None = None

    shippo_api_token: str | None = None
    shippo_base_url: str = "https://api.goshippo.com"
    ship_from_address: dict[str, Any] = Field(default_factory=dict)

    resend_api_key: str | None = None
    email_from: str = "orders@example.com"
    admin_email: str | None = None

    webhook_max_concurrency: int = 3
    webhook_max_retries: int = 4
    webhook_retry_delays: list[float] = Field(
        default_factory=lambda: [5.0, 20.0, 90.0, 300.0]
    )
    webhook_concurrency_defer_seconds: float = 2.0
    webhook_immediate_timeout_seconds: float = 90.0
    webhook_queued_timeout_seconds: float = 120.0

    email_max_retries: int = 3
    email_rate_limit_seconds: float = 2.0
    email_retry_delay_seconds: float = 30.0
    email_rate_limited_retry_delay_seconds: float = 60.0
    bypass_rate_limit: bool = False

    queue_tick_seconds: float = 0.1
    queue_idle_seconds: float = 1.0

    db_retry_attempts: int = 3
    db_transaction_retries: int = 2
    db_retry_base_delay_seconds: float = 1.0
    db_retry_max_delay_seconds: float = 5.0

    label_max_attempts: int = 5
    label_base_delay_seconds: float = 1.0
    label_backoff_multiplier: float = 2.0
    label_max_delay_seconds: float = 30.0
    label_job_spacing_seconds: float = 1.0

    @field_validator(
        "square_webhook_secret",
        "square_webhook_secret_sandbox",
        "shippo_webhook_secret",
        mode="before",
    )
    @classmethod
    def _strip_secret(cls, value: Any) -> Any:
        # Trailing newlines in env files break HMAC comparisons.
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def email_spacing_seconds(self) -> float:
        """Minimum gap between two email sends."""
        if self.bypass_rate_limit and not self.is_production:
            return 0.0
        return self.email_rate_limit_seconds
