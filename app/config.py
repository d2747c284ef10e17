from __future__ import annotations

from pydantic import AliasChoices, ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "EDGAR Loan Screener"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 4000
    cors_origins: list[str] = ["*"]

    # Snapshot schedule
    business_timezone: str = "America/New_York"
    refresh_hour: int = Field(6, ge=0, le=23)
    refresh_minute: int = Field(30, ge=0, le=59)
    scheduler_enabled: bool = True
    freshness_refresh_enabled: bool = True

    # Universe
    universe_limit: int = Field(300, ge=1)
    universe_cache_enabled: bool = True
    universe_fetch_attempts: int = Field(3, ge=1)

    # Fan-out
    refresh_concurrency: int = Field(4, ge=1)

    # SEC EDGAR
    sec_user_agent: str = Field(
        "contact@yourfirm.com",
        validation_alias=AliasChoices("sec_user_agent", "sec_ua"),
        description="Contact identifier sent as User-Agent per SEC fair-access policy.",
    )
    edgar_max_concurrency: int = Field(4, ge=1)
    # SEC fair access allows 10 req/s per host; starts are spaced across all workers.
    edgar_max_requests_per_second: float = Field(8.0, gt=0.0, le=10.0)
    http_timeout_seconds: float = Field(20.0, gt=0.0)

    # Market data (Financial Modeling Prep quote endpoint)
    market_data_base_url: str = "https://financialmodelingprep.com/stable"
    market_data_api_key: str | None = None
    market_data_max_concurrency: int = Field(4, ge=1)

    # Sentry
    sentry_dsn: str | None = None

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "screener"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()
