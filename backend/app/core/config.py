"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Ship Audit"
    debug: bool = False
    api_prefix: str = "/api"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./ship_audit.db"
    # Owner credential, only used for migrations, archival and overrides
    admin_database_url: str | None = None

    # Security
    secret_key: str = "change-me-in-production"
    access_token_expire_minutes: int = 15
    algorithm: str = "HS256"

    # CORS
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Rate Limiting
    rate_limit_requests: int = 100  # per minute

    # Audit log
    audit_on_failure: Literal["fail_closed", "fail_open_and_alert"] = "fail_open_and_alert"
    audit_lock_timeout_seconds: float = 5.0
    audit_append_timeout_seconds: float = 10.0
    audit_append_attempts: int = 5
    audit_background_attempts: int = 10
    audit_query_default_limit: int = 100
    audit_query_max_limit: int = 1000
    audit_verify_batch_size: int = 1000
    audit_verify_max_limit: int = 100000
    audit_archive_dir: str = "./audit-archives"
    audit_retention_months: int = 12


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
