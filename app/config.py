"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "kartpay"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Postgres (postgresql+asyncpg://...)
    database_url: str = ""
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_echo: bool = False

    # Logging (JSON in production, plain text otherwise)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""

    # Upper bound for a single gateway call, in seconds
    gateway_timeout_seconds: float = 10.0

    # Single-currency store
    currency: Literal["INR"] = "INR"

    # Admin
    admin_api_key: str = ""

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
