"""
Application settings using Pydantic.

Provides environment-based configuration loading with TABLEKEEPER_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "tablekeeper"
    app_version: str = "0.3.0"
    environment: str = "development"

    # AWS
    aws_region: str = "us-east-1"
    dynamodb_endpoint: str | None = None
    table_prefix: str = "dev"
    required_tables: list[str] = ["users"]
    table_store_backend: str = "dynamodb"  # dynamodb, memory

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Worker files; empty means derive from environment
    lock_file_path: str = ""
    status_file_path: str = ""

    # Worker schedule and retry budget
    schedule: str | None = None
    lock_timeout_seconds: float = 1800.0
    lock_retry_interval_seconds: float = 5.0
    max_retries: int = 5
    retry_delay_seconds: float = 2.0
    backoff_multiplier: float = 2.0

    # Feature flags
    dry_run: bool = False
    skip_validation: bool = False
    force_recreate: bool = False
    run_once: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "TABLEKEEPER_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
