"""
Structured logging configuration using structlog.

JSON output in production (log aggregation), colored console output in
development. Colors are disabled under pytest so captured output stays
readable.

Usage:
    from partnermatch.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.warning("circuit opened", circuit="apollo-api", failures=5)

Output in production (JSON):
    {"event": "circuit opened", "circuit": "apollo-api", "failures": 5,
     "timestamp": "2025-01-01T12:00:00Z", "level": "warning"}
"""

import logging
import sys
from typing import Any

import structlog

from partnermatch.core.config import settings

IS_TEST = "pytest" in sys.modules


def configure_logging() -> None:
    """Configure structlog processors for the current environment."""

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.is_production:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route third-party stdlib logging to stdout as well
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.INFO,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


# Configure on import
configure_logging()
