"""
Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


MIB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # ==========================================================================
    # Environment
    # ==========================================================================

    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # ==========================================================================
    # API Server
    # ==========================================================================

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ==========================================================================
    # Sessions
    # ==========================================================================

    session_cookie_name: str = "session_id"
    session_ttl_hours: int = 24 * 7
    guest_session_ttl_hours: int = 24
    cookie_secure: bool = False

    # ==========================================================================
    # Bootstrap accounts (created on first run if missing)
    # ==========================================================================

    admin_username: str = "admin"
    admin_password: str = "change-me-admin"
    guest_username: str = "guest"
    guest_passcode: str = "change-me-guest"

    # ==========================================================================
    # Quota
    # ==========================================================================

    storage_quota_bytes: int = 300 * MIB
    # "grow_only" never gives bytes back; "credit_on_reclaim" decrements on delete
    quota_policy: str = "grow_only"

    # ==========================================================================
    # Metadata database (users, sessions, quota usage, records, reclaim queue)
    # ==========================================================================

    # Any SQLAlchemy URL; "" keeps everything in process memory (tests, demos)
    database_url: str = "sqlite:///./data/promptstudio.db"

    # ==========================================================================
    # Asset storage
    # ==========================================================================

    # "local", "s3", or "" (no bucket: asset operations answer 503)
    storage_backend: str = "local"
    content_dir: str = "./data/content"

    aws_region: str = "us-east-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_s3_bucket: str = ""
    aws_s3_prefix: str = ""
    # Set for S3-compatible stores (R2, MinIO)
    aws_s3_endpoint_url: str = ""

    # ==========================================================================
    # Optional Services
    # ==========================================================================

    sentry_dsn: str = ""

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def use_s3(self) -> bool:
        """Whether assets go to an S3-compatible bucket."""
        return self.storage_backend.lower().strip() == "s3"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
