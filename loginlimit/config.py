"""
Configuration management via environment variables.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, ValidationError, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from loginlimit.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from LOGINLIMIT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LOGINLIMIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Rate limit settings
    enable_frontend_checks: bool = Field(
        default=True,
        description="Track failed logins on the public site",
    )
    enable_backend_checks: bool = Field(
        default=True,
        description="Track failed logins on the administration interface",
    )
    max_retries: int = Field(
        default=5,
        gt=0,
        description="Failed attempts within the findtime window that trigger a ban",
    )
    find_time_seconds: int = Field(
        default=300,
        gt=0,
        description="Sliding window over which failed attempts are counted",
    )
    disable_ip_check: bool = Field(
        default=False,
        description="Never ban by IP address, only by username",
    )
    delay_login_on_failure: bool = Field(
        default=False,
        description="Delay the response to a failed login by min(attempts, 10) seconds",
    )
    ban_time_seconds: int = Field(
        default=0,
        ge=0,
        description="How long a ban stays active after its last renewal (0 = forever)",
    )

    # Database settings
    database_url: str | None = Field(
        default=None,
        description="PostgreSQL URL; in-memory stores are used when unset",
    )
    db_pool_min_size: int = Field(default=1, ge=0, description="Minimum pool connections")
    db_pool_max_size: int = Field(default=10, gt=0, description="Maximum pool connections")

    # API settings
    api_token: str | None = Field(
        default=None,
        description="Shared token required in X-API-Token (disabled when unset)",
    )

    @computed_field
    @property
    def storage_backend(self) -> str:
        """Name of the store implementation in use."""
        return "postgres" if self.database_url else "memory"


def load_settings() -> Settings:
    """Build settings, raising ConfigurationError instead of ValidationError."""
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid login limit configuration: {exc}") from exc


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
