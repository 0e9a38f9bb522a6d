"""
tsdbquery configuration.

Pydantic-based settings loaded from environment variables and .env files.
"""

from tsdbquery.config.settings import (
    RESOLUTION_MILLISECOND,
    RESOLUTION_SECOND,
    Settings,
    get_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "RESOLUTION_SECOND",
    "RESOLUTION_MILLISECOND",
]
