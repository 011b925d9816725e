from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "community-service"


class ServiceSettings(BaseSettings):
    """Base settings shared by all FastAPI services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    site_url: str | None = Field(default=None)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    kafka_bootstrap_servers: str | None = Field(default=None)

    partner_max_days: int = Field(default=30, ge=1, le=90)
    partner_pending_grace_minutes: int = Field(default=30, ge=1)
    partner_currency: str = Field(default="EUR", min_length=3, max_length=3)
    partner_default_daily_prices: list[Decimal] | None = Field(default=None)
    partner_settings_cache_ttl_seconds: int = Field(default=5, ge=0)

    payment_timeout_seconds: float = Field(default=10.0, gt=0.0)
    stripe_secret_key: str | None = Field(default=None)
    stripe_webhook_secret: str | None = Field(default=None)
    paypal_client_id: str | None = Field(default=None)
    paypal_client_secret: str | None = Field(default=None)
    paypal_environment: Literal["sandbox", "live"] = Field(default="sandbox")

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
