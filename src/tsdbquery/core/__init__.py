"""Core modules for tsdbquery - centralized definitions and utilities."""

from tsdbquery.core.errors import (
    BuildError,
    ConfigurationError,
    ExitCode,
    ProtocolError,
    TransportError,
    TsdbQueryError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "TsdbQueryError",
    "ConfigurationError",
    "BuildError",
    "TransportError",
    "ProtocolError",
    "main_with_error_handling",
    "format_error_message",
]
