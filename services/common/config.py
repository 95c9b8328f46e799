from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "booking-platform-service"
SERVICE_VERSION = "1.0.0"


class ServiceSettings(BaseSettings):
    """Base settings shared by the booking platform services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    create_tables_on_startup: bool = Field(default=True)
    redis_url: str | None = Field(default=None)
    kafka_bootstrap_servers: str | None = Field(default=None)
    default_margin_percent: Decimal = Field(default=Decimal("15"), ge=Decimal("0"), le=Decimal("100"))
    pricing_currency: str = Field(default="SAR", min_length=3, max_length=3)
    margin_rule_cache_ttl_seconds: int = Field(default=300, ge=0)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
