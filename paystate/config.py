from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # Marketplace backend (orders, remote pricing)
    api_url: str = "http://localhost:3001/api"
    api_token: str = ""
    # Where the payer lands after a redirect flow
    frontend_url: str = "http://localhost:3000"

    # Wompi config
    wompi_base_url: str = "https://sandbox.wompi.co/v1"
    wompi_checkout_url: str = "https://checkout.wompi.co/p/"
    wompi_public_key: str = "pub_test_key"
    wompi_private_key: str = "prv_test_key"
    wompi_integrity_secret: str = ""
    wompi_events_secret: str = ""
    currency: str = "COP"
    http_timeout_seconds: float = 15.0

    # Reconciliation
    poll_interval_seconds: float = 5.0
    auto_monitor: bool = True
    save_transaction_retries: int = 3
    save_transaction_backoff_seconds: float = 1.0

    # Pricing
    default_margin_percent: float = 5.0
    min_platform_margin: float = 2000.0

    # Database (PostgreSQL), optional state snapshots
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "payments"

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql+psycopg2://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
