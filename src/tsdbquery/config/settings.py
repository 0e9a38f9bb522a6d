"""
Application settings using Pydantic.

Provides environment-based configuration loading with TSDBQUERY_ prefix.
"""

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Timestamp resolution of the backend (jsonData.tsdbResolution)
RESOLUTION_SECOND = 1
RESOLUTION_MILLISECOND = 2


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TSDBQUERY_",
        extra="ignore",
    )

    # Backend
    url: str = "http://localhost:4242"
    version: int = Field(default=1, ge=1, le=3)
    resolution: int = Field(default=RESOLUTION_SECOND, ge=1, le=2)
    lookup_limit: int = 1000

    # Credentials (resolved by the caller, never persisted here)
    basic_auth_user: str | None = None
    basic_auth_password: SecretStr | None = None
    auth_header: SecretStr | None = None

    # HTTP client settings
    http_timeout: float = 30.0
    http_max_retries: int = 3
    http_retry_backoff_factor: float = 0.5

    # Deadline for one panel evaluation, in seconds
    query_timeout: float | None = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
