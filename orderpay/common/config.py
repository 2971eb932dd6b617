"""Environment-driven settings for the payment and order lifecycle engine.

A `Settings` instance is built once by the process entrypoint and passed to
every component that needs it (see `.env.example`).
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed view of every option the engine recognises."""

    service_name: str = "orderpay"
    log_level: str = "INFO"
    database_dsn: str
    redis_url: str = "redis://redis:6379/0"
    api_key: str
    otel_exporter_otlp_endpoint: str = ""
    supported_currencies: list[str] = ["usd", "eur", "gbp", "cad"]
    min_amount: int = 50
    max_amount: int = 99_999_999
    gateway_secret_key: str = ""
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    gateway_timeout_seconds: float = 10.0
    gateway_read_retries: int = 3
    gateway_backoff_seconds: float = 0.5
    idempotency_ttl_seconds: int = 86400
    webhook_retention_days: int = 30
    webhook_workers: int = 8
    webhook_queue_size: int = 64
    webhook_handler_timeout_seconds: float = 15.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("supported_currencies")
    @classmethod
    def _normalise_currencies(cls, value: list[str]) -> list[str]:
        currencies = [code.strip().lower() for code in value]
        for code in currencies:
            if len(code) != 3 or not code.isalpha():
                raise ValueError(f"invalid currency code: {code!r}")
        return currencies

    @model_validator(mode="after")
    def _check_amount_bounds(self) -> "Settings":
        if self.min_amount <= 0 or self.min_amount > self.max_amount:
            raise ValueError("min_amount must be positive and not exceed max_amount")
        return self
