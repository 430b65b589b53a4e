"""Application configuration using Pydantic settings."""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/multiscraper.db"
    db_connect_max_attempts: int = 5
    db_connect_backoff_seconds: float = 2.0  # Doubled after every failed attempt
    db_echo: bool = False

    # Telegram delivery
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"
    app_host: str = "0.0.0.0"
    app_port: int = 8001
    admin_api_key: str = ""

    # ==========================================================================
    # Scheduler
    # ==========================================================================
    default_interval_minutes: int = 60
    min_interval_minutes: int = 1
    query_discovery_interval_seconds: int = 60  # Poll for queries created elsewhere
    scheduler_status_interval_seconds: int = 300
    misfire_grace_seconds: int = 120

    # ==========================================================================
    # HTTP transport
    # ==========================================================================
    http_request_timeout_seconds: float = 30.0
    proxy_url: str = ""  # Rotating proxy endpoint, used per retailer flag

    # Pagination
    min_page_delay_seconds: float = 1.0  # Minimum delay between page requests
    max_page_delay_seconds: float = 3.0  # Maximum delay between page requests
    max_pages_per_search: int = 10
    max_parallel_pages: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("http_request_timeout_seconds")
    @classmethod
    def _timeout_must_be_bounded(cls, value: float) -> float:
        if value <= 0 or value == float("inf"):
            raise ValueError("http_request_timeout_seconds must be a finite positive number")
        return value

    @field_validator("min_interval_minutes", "default_interval_minutes")
    @classmethod
    def _interval_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("intervals are expressed in whole minutes and must be >= 1")
        return value


settings = Settings()
