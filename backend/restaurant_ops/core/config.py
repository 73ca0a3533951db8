"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly.
"""

from functools import lru_cache
from typing import List, Literal

import pytz
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path for Docker, override via env for local dev
    database_url: str = "sqlite:///./data/restaurant_ops.db"

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Default tenant time zone, used when a tenant has none on record
    timezone: str = "America/Argentina/Buenos_Aires"

    # ==========================================================================
    # Operational modes
    # ==========================================================================
    peak_demand_default_ttl_minutes: int = 1440  # 24 hours
    mode_expiry_sweep_interval_seconds: int = 300

    # ==========================================================================
    # Daily cost analysis
    # ==========================================================================
    daily_cost_generation_timeout_seconds: float = 60.0

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @field_validator(
        "peak_demand_default_ttl_minutes",
        "mode_expiry_sweep_interval_seconds",
        "daily_cost_generation_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
