"""Application configuration via environment variables."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payment_gateway.db"
    log_level: str = "INFO"
    ledger_backend: str = "sql"  # "sql" or "memory"

    # Deterministic in-process providers instead of the real HTTP adapters
    use_mock_providers: bool = True
    mock_latency_ms: int = 0

    max_payment_amount: Decimal = Decimal("1000000.00")
    default_provider: str = "paypal"
    provider_priority: list[str] = ["paypal", "paystack"]

    provider_timeout_seconds: float = 30.0
    read_max_retries: int = 3
    write_max_retries: int = 1  # Safe only because the transaction id travels as idempotency key
    retry_base_delay: float = 0.5

    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_base_url: str = "https://api-m.sandbox.paypal.com"
    paypal_webhook_secret: str = ""

    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
