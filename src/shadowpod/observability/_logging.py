"""shadowpod structured logging with JSON formatting.

Provides structured logging using structlog with:
- JSON format for machine parsing (production)
- Colorful console output for development
- Automatic log level handling
- ISO timestamps
- Exception formatting
"""

import logging
import sys
from typing import Any, cast

import structlog
from structlog.types import FilteringBoundLogger, Processor

from shadowpod.config.settings import settings


def configure_logging(
    level: str | None = None,
    format_type: str | None = None,
) -> FilteringBoundLogger:
    """Configure structlog for the application.

    Configures structured logging with JSON output for production
    and colorful console output for development.

    Args:
        level: Logging level override (defaults to settings)
        format_type: Output format override, "json" or "console"

    Returns:
        FilteringBoundLogger: Configured logger instance
    """
    level_name = (level or settings.observability.log_level).upper()
    log_format = format_type or settings.observability.log_format

    # Shared processors for both console and JSON output
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    processors: list[Processor]
    if log_format == "json" or settings.is_production:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(
                colors=True,
                pad_event=25,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level_name)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=logging.getLevelName(level_name),
    )

    return cast(FilteringBoundLogger, structlog.get_logger())


def get_logger(name: str | None = None, **initial_context: Any) -> FilteringBoundLogger:
    """Get a logger instance with optional initial context.

    Args:
        name: Optional logger name (typically module name)
        **initial_context: Initial context to bind to logger

    Returns:
        FilteringBoundLogger: Logger instance with bound context

    Example:
        >>> log = get_logger(__name__, component="poller")
        >>> log.info("pod_ready", pod="shadow-abc")
        {
          "component": "poller",
          "event": "pod_ready",
          "level": "info",
          "pod": "shadow-abc",
          "timestamp": "2026-01-09T12:34:56.789Z"
        }
    """
    logger = structlog.get_logger(name) if name else structlog.get_logger()

    if initial_context:
        logger = logger.bind(**initial_context)

    return cast(FilteringBoundLogger, logger)


# Initialize logging on module import
configure_logging()


log = get_logger("shadowpod")


__all__ = ["configure_logging", "get_logger", "log"]
