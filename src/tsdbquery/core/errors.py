"""
Unified error handling for tsdbquery.

Every failure that aborts a panel evaluation is raised as a subclass of
TsdbQueryError so callers get a single descriptive error per evaluation.

Exit Codes (CLI):
- 0: Success
- 10: Configuration error
- 11: Build error (target could not be turned into a request)
- 12: Transport error (network, timeout, deadline)
- 13: Protocol error (non-2xx status or unexpected response body)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()

BODY_SNIPPET_LIMIT = 512


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFIG_ERROR = 10
    BUILD_ERROR = 11
    TRANSPORT_ERROR = 12
    PROTOCOL_ERROR = 13
    UNKNOWN_ERROR = 127


class TsdbQueryError(Exception):
    """Base exception for tsdbquery errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return format_error_message(self)


class ConfigurationError(TsdbQueryError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class BuildError(TsdbQueryError):
    """Raised when a target cannot be serialized into a request."""

    exit_code = ExitCode.BUILD_ERROR


class TransportError(TsdbQueryError):
    """Raised on network failures, timeouts and exceeded deadlines."""

    exit_code = ExitCode.TRANSPORT_ERROR


class ProtocolError(TsdbQueryError):
    """Raised on non-2xx responses or bodies that do not match the expected shape."""

    exit_code = ExitCode.PROTOCOL_ERROR

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ):
        details = dict(details or {})
        if status_code is not None:
            details.setdefault("status", status_code)
        if body:
            details.setdefault("body", truncate_body(body))
        super().__init__(message, details)
        self.status_code = status_code
        self.body = body


def truncate_body(body: str, limit: int = BODY_SNIPPET_LIMIT) -> str:
    """Shorten a response body so it can be attached to an error."""
    body = body.strip()
    if len(body) <= limit:
        return body
    return body[:limit] + "..."


def with_request(error: TsdbQueryError, request: str) -> TsdbQueryError:
    """Tag an error with the sub-request that produced it."""
    error.details.setdefault("request", request)
    return error


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Exit codes:
        - TsdbQueryError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except TsdbQueryError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                print(f"Error: {format_error_message(e)}", file=sys.stderr)
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: TsdbQueryError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
