"""Central environment-driven settings shared by the orchestrator process.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`); every field has a development default so the
sandbox providers and a local SQLite database work out of the box.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CURRENCY_ROUTES: dict[str, str] = {
    "USD": "stripe",
    "EUR": "stripe",
    "GBP": "stripe",
    "CAD": "stripe",
    "IDR": "xendit",
    "PHP": "xendit",
    "VND": "xendit",
    "THB": "xendit",
    "MYR": "xendit",
    "INR": "razorpay",
    "HKD": "airwallex",
    "CNY": "airwallex",
    "AUD": "airwallex",
    "NZD": "airwallex",
    "SGD": "airwallex",
}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payroute"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./payroute.db"
    auto_create_schema: bool = True
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    providers: list[str] = Field(default_factory=lambda: ["stripe", "xendit", "razorpay", "airwallex"])
    default_provider: str = "stripe"
    currency_routes: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CURRENCY_ROUTES))

    availability_probe_timeout_seconds: float = 2.0
    provider_call_timeout_seconds: float = 15.0
    compensation_timeout_seconds: float = 30.0

    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 0.1
    retry_max_delay_seconds: float = 10.0
    retry_multiplier: float = 2.0
    retry_jitter: bool = True

    breaker_max_failures: int = 5
    breaker_timeout_seconds: float = 30.0
    breaker_half_open_max: int = 3

    webhook_secrets: dict[str, str] = Field(default_factory=dict)
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
