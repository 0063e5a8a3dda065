"""
Exception types and unified error reporting with Sentry integration.

Provides:
- The package exception hierarchy (circuit rejections, retry exhaustion)
- Structured logging of captured errors, enriched with bound context vars
- Forwarding to Sentry when it has been initialized

Usage:
    # Capture an exception
    capture_exception(exc, context={"provider": "market_intelligence"})

    # Capture a non-exception event
    capture_message("Circuit opened", level="warning", context={"circuit": "apollo-api"})
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration

logger = structlog.get_logger(__name__)

__all__ = [
    "PartnerMatchError",
    "CircuitOpenError",
    "CircuitOperationError",
    "RetryError",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "is_sentry_enabled",
]


class PartnerMatchError(Exception):
    """Base class for errors raised by partnermatch."""


class CircuitOpenError(PartnerMatchError):
    """A call was short-circuited because its circuit is OPEN."""

    def __init__(self, circuit: str, retry_after_ms: int, message: Optional[str] = None):
        self.circuit = circuit
        self.retry_after_ms = retry_after_ms
        super().__init__(message or f"Circuit breaker OPEN for {circuit}")

    @property
    def retry_after_seconds(self) -> int:
        return -(-self.retry_after_ms // 1000)


class CircuitOperationError(PartnerMatchError):
    """The operation ran through the breaker and failed."""

    def __init__(self, circuit: str, message: str):
        self.circuit = circuit
        super().__init__(message)


class RetryError(PartnerMatchError):
    """Raised when a retried operation ends in a terminal failure."""

    def __init__(self, message: str, attempts: int, final_status: Optional[int] = None):
        self.attempts = attempts
        self.final_status = final_status
        super().__init__(message)


_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        traces_sample_rate: Fraction of transactions to trace (0.0-1.0)
        release: Release version (defaults to GIT_COMMIT_SHA)

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release or os.environ.get("GIT_COMMIT_SHA"),
            integrations=[
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            ignore_errors=[KeyboardInterrupt, SystemExit],
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, traces_sample_rate=traces_sample_rate)
    return True


def is_sentry_enabled() -> bool:
    """Check if Sentry is initialized and available."""
    return _sentry_initialized


def _enrich(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        **structlog.contextvars.get_contextvars(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with structured logging and Sentry.

    Returns:
        Sentry event ID, or None if Sentry is not enabled
    """
    enriched_context = {"error_type": type(exc).__name__, **_enrich(context)}

    logger.error("Exception captured", exc_info=exc, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))
        return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a non-exception event, such as a circuit breaker opening.

    Returns:
        Sentry event ID, or None if Sentry is not enabled
    """
    enriched_context = _enrich(context)

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            for key, value in (tags or {}).items():
                scope.set_tag(key, value)
            return sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning("Failed to send message to Sentry", error=str(e))
        return None
