"""
KSIWatch Application Configuration

Settings are read from the environment (prefix ``KSIWATCH_``) and an
optional ``.env`` file. Use ``get_settings()`` for the cached instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="KSIWATCH_", extra="ignore")

    # System identity
    system_id: str = "ksiwatch-system"
    system_name: str = "Cloud Service Offering"

    # Persistence
    database_url: str = Field(
        default_factory=lambda: f"sqlite:///{Path('.ksiwatch') / 'ksiwatch.db'}",
        description="SQLAlchemy URL for evidence and validation history",
    )
    storage_max_retries: int = 3
    storage_base_delay: float = 0.1  # seconds
    storage_max_delay: float = 2.0  # seconds

    # Validation
    freshness_threshold_days: int = 365
    check_timeout_seconds: float = 30.0
    max_workers: Optional[int] = None  # None = os.cpu_count()

    # Artifacts
    artifact_dir: str = "artifacts"
    signing_key_file: Optional[str] = None

    # Drift notification
    webhook_url: Optional[str] = None
    notification_max_retries: int = 3

    # Logging
    log_level: str = "INFO"

    @field_validator("freshness_threshold_days")
    @classmethod
    def threshold_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Freshness threshold must be at least one day")
        return v

    @field_validator("check_timeout_seconds")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Check timeout must be positive")
        return v

    @field_validator("max_workers")
    @classmethod
    def workers_must_be_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("max_workers must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def worker_count(self) -> int:
        return self.max_workers or os.cpu_count() or 1


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()
