"""Configuration management for Assist Adoption."""

import os
from functools import lru_cache
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env" if os.getenv("ENVIRONMENT") != "test" else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow"
    )

    # Application
    app_name: str = "Assist Adoption"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./assist_adoption.db")

    # Encryption
    encryption_key_secret_name: str = Field(
        default="encryption-key",
        description="Name of the secret holding the active identifier encryption key",
    )
    encryption_secrets: Dict[str, str] = Field(
        default_factory=dict,
        description="JSON map of secret name to secret value",
    )

    # Aggregation
    reminder_days: int = Field(
        default=14,
        description="Days without activity before a user lands in the inactivity ledger",
    )
    week_start: Literal["monday", "sunday"] = Field(default="monday")
    dedupe_snapshot_dates: bool = Field(
        default=False,
        description="Skip aggregates that already reflect the snapshot's report date",
    )

    # Email list (exclusion or inclusion)
    email_list_url: Optional[str] = Field(default=None)
    email_list_field: str = Field(default="email")
    email_list_cache_minutes: int = Field(default=30)
    is_email_list_exclusive: bool = Field(
        default=False,
        description="True: the list is an inclusion list. False: an exclusion list.",
    )

    # Queue
    user_aggregations_queue_name: str = Field(default="user-aggregations")
    queue_visibility_timeout_seconds: int = Field(default=300)
    queue_max_dequeue_count: int = Field(default=5)
    queue_poll_interval_seconds: float = Field(default=5.0)
    queue_batch_size: int = Field(default=16)

    # Webhook
    webhook_auth_id: Optional[str] = Field(default=None)

    # Admin surface
    admin_api_key: Optional[str] = Field(default=None)

    # Key rotation
    rotation_daily_window_days: int = Field(default=7)
    rotation_page_size: int = Field(default=1000)
    rotation_partition_chunk_size: int = Field(default=50)
    rotation_row_chunk_size: int = Field(default=100)
    rotation_batch_delay_seconds: float = Field(default=0.05)
    rotation_page_delay_seconds: float = Field(default=0.1)

    # Feature Flags
    enable_aggregation_worker: bool = Field(default=False)
    enable_metrics: bool = Field(default=False)

    @field_validator("week_start", mode="before")
    @classmethod
    def normalize_week_start(cls, v):
        return str(v).strip().lower()

    @field_validator("rotation_row_chunk_size")
    @classmethod
    def validate_row_chunk_size(cls, v):
        # Same-partition batches are capped by the store
        if v < 1 or v > 100:
            raise ValueError("rotation_row_chunk_size must be between 1 and 100")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
