"""
Configuration and settings for the parcel backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "PARCELVAULT_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    # Backup blob store
    blob_backend: Literal["jsonbin", "s3", "memory"] = Field(default="jsonbin")
    jsonbin_api_key: Optional[str] = Field(default=None)
    jsonbin_base_url: str = Field(default="https://api.jsonbin.io/v3")
    blob_timeout_seconds: float = Field(default=30.0, gt=0)
    blob_max_retries: int = Field(default=3, ge=0)
    blob_backoff_seconds: float = Field(default=1.0, ge=0.0)

    # S3-compatible storage for snapshots
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: Optional[str] = Field(default=None)
    s3_prefix: str = Field(default="backups/")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Backup run coordination (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_lock_prefix: str = Field(default="parcelvault:backup-lock:")
    backup_lock_ttl_seconds: int = Field(default=900, ge=1)

    # Retention and lifecycle policy
    backup_retention: int = Field(default=5, ge=1)
    archive_months_default: int = Field(default=2, ge=1)
    max_recipient_summaries: int = Field(default=3, ge=1)
    scheduler_autostart: bool = Field(default=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
