import logging
import sys
from typing import Any

import structlog

LOG_FORMATS = ("console", "json")


def configure_logging(level: int | str = logging.INFO, log_format: str = "console") -> None:
    """Route structlog through stdlib logging on stderr.

    stdout stays reserved for command output (``tsdbquery query --json``).
    """
    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Logger carrying panel-level fields (window, version) on every event."""
    return structlog.get_logger().bind(**kwargs)
