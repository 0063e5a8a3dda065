"""Retry helpers for transient failures of outbound calls.

Three entry points share one backoff policy (exponential, capped, with
symmetric jitter):

- ``fetch_with_retry``: HTTP requests through httpx. Retries on the
  configured status codes and honours ``Retry-After``.
- ``retry_async``: any awaitable operation, result-object style.
- ``with_retry``: any awaitable operation, re-raises the last error.

Failures that do not look transient are returned (or raised) immediately
without consuming the retry budget.
"""

import asyncio
import functools
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from partnermatch.core.config import settings
from partnermatch.core.errors import RetryError
from partnermatch.core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# Substrings (lowercase) of error messages that indicate a transient failure
RETRYABLE_ERROR_PATTERNS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "network",
    "socket",
    "fetch failed",
    "aborted",
    "rate limit",
    "429",
    "502",
    "503",
)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES
    jitter_percent: float = 25.0  # Total jitter width, centred on the delay

    def __post_init__(self):
        object.__setattr__(self, "retryable_statuses", frozenset(self.retryable_statuses))
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_percent <= 100:
            raise ValueError("jitter_percent must be between 0 and 100")


DEFAULT_RETRY_CONFIG = RetryConfig()

# Critical operations: more attempts, longer cap
AGGRESSIVE_RETRY_CONFIG = RetryConfig(
    max_retries=5,
    initial_delay_ms=500,
    max_delay_ms=60_000,
    jitter_percent=30.0,
)

# Non-critical operations: fail fast
LIGHT_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    initial_delay_ms=500,
    max_delay_ms=5000,
    retryable_statuses=frozenset({429, 502, 503, 504}),
    jitter_percent=20.0,
)


def create_retry_config(**overrides: Any) -> RetryConfig:
    """Derive a config from DEFAULT_RETRY_CONFIG."""
    return replace(DEFAULT_RETRY_CONFIG, **overrides)


@dataclass
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    total_delay_ms: int = 0
    data: Optional[T] = None
    error: Optional[str] = None
    final_status: Optional[int] = None

    def unwrap(self) -> T:
        """Return the data, or raise RetryError for a failed result."""
        if not self.success:
            raise RetryError(
                self.error or "Max retries exhausted",
                attempts=self.attempts,
                final_status=self.final_status,
            )
        return self.data  # type: ignore[return-value]


def _retry_after_ms(header: Optional[str]) -> Optional[int]:
    """Parse a numeric Retry-After value: seconds if <= 1000, otherwise ms."""
    if header is None:
        return None
    try:
        retry_after = int(header.strip())
    except ValueError:
        # HTTP-date form is not supported; fall back to computed backoff
        return None
    if retry_after < 0:
        return None
    return retry_after if retry_after > 1000 else retry_after * 1000


def calculate_delay(attempt: int, config: RetryConfig, retry_after: Optional[str] = None) -> int:
    """
    Delay in milliseconds before the retry that follows failed attempt `attempt` (0-based).

    Args:
        attempt: Index of the attempt that just failed
        config: Retry configuration
        retry_after: Raw Retry-After header value, if the server sent one

    Returns:
        Delay in whole milliseconds, never negative
    """
    server_delay = _retry_after_ms(retry_after)
    if server_delay is not None:
        return min(server_delay, config.max_delay_ms)

    try:
        exponential = config.initial_delay_ms * config.backoff_multiplier**attempt
    except OverflowError:
        exponential = float(config.max_delay_ms)
    capped = min(exponential, config.max_delay_ms)

    jitter_range = capped * (config.jitter_percent / 100)
    jitter = random.random() * jitter_range - jitter_range / 2

    return max(0, round(capped + jitter))


def is_retryable_error(error: BaseException) -> bool:
    """Check if an exception looks like a transient network/rate-limit failure."""
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_ERROR_PATTERNS)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


async def fetch_with_retry(
    method: str,
    url: str,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    operation_name: str = "API call",
    client: Optional[httpx.AsyncClient] = None,
    **request_kwargs: Any,
) -> RetryResult[Any]:
    """
    Perform an HTTP request with retries, returning the decoded JSON body.

    Args:
        method: HTTP method
        url: Request URL
        config: Retry configuration
        operation_name: Name used in log events
        client: Shared client; a short-lived one is created when omitted
        **request_kwargs: Passed through to ``httpx.AsyncClient.request``

    Returns:
        RetryResult; never raises for HTTP or transport failures
    """
    if client is None:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as owned_client:
            return await _fetch_with_retry(owned_client, method, url, config, operation_name, request_kwargs)
    return await _fetch_with_retry(client, method, url, config, operation_name, request_kwargs)


async def _fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    config: RetryConfig,
    operation_name: str,
    request_kwargs: dict[str, Any],
) -> RetryResult[Any]:
    last_error: Optional[str] = None
    last_status: Optional[int] = None
    total_delay_ms = 0

    for attempt in range(config.max_retries + 1):
        if attempt > 0:
            logger.info("Retry attempt", operation=operation_name, attempt=attempt, max_retries=config.max_retries)

        try:
            response = await client.request(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            last_error = _error_message(e)
            if is_retryable_error(e) and attempt < config.max_retries:
                delay_ms = calculate_delay(attempt, config)
                logger.warning("Network error, retrying", operation=operation_name, error=last_error, delay_ms=delay_ms)
                await asyncio.sleep(delay_ms / 1000)
                total_delay_ms += delay_ms
                continue

            logger.error("Request failed", operation=operation_name, attempts=attempt + 1, error=last_error)
            return RetryResult(
                success=False,
                attempts=attempt + 1,
                total_delay_ms=total_delay_ms,
                error=last_error,
                final_status=last_status,
            )

        last_status = response.status_code

        if response.is_success:
            try:
                data = response.json() if response.content else None
            except ValueError as e:
                logger.error("Invalid JSON response", operation=operation_name, status=last_status, error=str(e))
                return RetryResult(
                    success=False,
                    attempts=attempt + 1,
                    total_delay_ms=total_delay_ms,
                    error=f"Invalid JSON response: {e}",
                    final_status=last_status,
                )

            if attempt > 0:
                logger.info(
                    "Succeeded after retries",
                    operation=operation_name,
                    retries=attempt,
                    total_delay_ms=total_delay_ms,
                )
            return RetryResult(
                success=True,
                attempts=attempt + 1,
                total_delay_ms=total_delay_ms,
                data=data,
                final_status=last_status,
            )

        body = response.text

        if last_status in config.retryable_statuses and attempt < config.max_retries:
            delay_ms = calculate_delay(attempt, config, response.headers.get("Retry-After"))
            last_error = f"HTTP {last_status}: {body[:100]}"
            logger.warning(
                "Retryable status, retrying",
                operation=operation_name,
                status=last_status,
                delay_ms=delay_ms,
                body=body[:200],
            )
            await asyncio.sleep(delay_ms / 1000)
            total_delay_ms += delay_ms
            continue

        error = f"HTTP {last_status}: {body[:200]}"
        logger.error("Non-retryable error", operation=operation_name, attempts=attempt + 1, error=error)
        return RetryResult(
            success=False,
            attempts=attempt + 1,
            total_delay_ms=total_delay_ms,
            error=error,
            final_status=last_status,
        )

    # The final attempt always returns above
    return RetryResult(
        success=False,
        attempts=config.max_retries + 1,
        total_delay_ms=total_delay_ms,
        error=last_error or "Max retries exhausted",
        final_status=last_status,
    )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    operation_name: str = "async operation",
) -> RetryResult[T]:
    """
    Retry an async operation on transient errors, returning a RetryResult.

    Errors rejected by ``is_retryable_error`` end the sequence immediately.
    """
    last_error: Optional[str] = None
    total_delay_ms = 0

    for attempt in range(config.max_retries + 1):
        if attempt > 0:
            logger.info("Retry attempt", operation=operation_name, attempt=attempt, max_retries=config.max_retries)

        try:
            data = await operation()
        except Exception as e:
            last_error = _error_message(e)

            if not is_retryable_error(e):
                logger.error("Non-retryable error", operation=operation_name, attempts=attempt + 1, error=last_error)
                return RetryResult(
                    success=False,
                    attempts=attempt + 1,
                    total_delay_ms=total_delay_ms,
                    error=last_error,
                )

            if attempt < config.max_retries:
                delay_ms = calculate_delay(attempt, config)
                logger.warning("Transient error, retrying", operation=operation_name, error=last_error, delay_ms=delay_ms)
                await asyncio.sleep(delay_ms / 1000)
                total_delay_ms += delay_ms
            continue

        if attempt > 0:
            logger.info("Succeeded after retries", operation=operation_name, retries=attempt)
        return RetryResult(success=True, attempts=attempt + 1, total_delay_ms=total_delay_ms, data=data)

    logger.error(
        "Retries exhausted",
        operation=operation_name,
        attempts=config.max_retries + 1,
        error=last_error,
    )
    return RetryResult(
        success=False,
        attempts=config.max_retries + 1,
        total_delay_ms=total_delay_ms,
        error=last_error or "Max retries exhausted",
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30_000,
    operation_name: str = "operation",
    on_retry: Optional[Callable[[int, int, Exception], Any]] = None,
    retry_if: Callable[[Exception], bool] = is_retryable_error,
) -> T:
    """
    Retry an async operation, re-raising the last error when retries run out.

    Args:
        operation: Zero-argument coroutine function
        max_retries: Retries after the first attempt
        base_delay_ms: Delay before the first retry
        max_delay_ms: Delay cap
        operation_name: Name used in log events
        on_retry: Optional callback(attempt, delay_ms, error) called before each sleep
        retry_if: Predicate deciding whether an error is worth retrying
    """
    config = RetryConfig(max_retries=max_retries, initial_delay_ms=base_delay_ms, max_delay_ms=max_delay_ms)

    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries or not retry_if(e):
                logger.error(
                    "Operation failed",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=_error_message(e),
                )
                raise

            delay_ms = calculate_delay(attempt, config)
            if on_retry:
                on_retry(attempt + 1, delay_ms, e)
            else:
                logger.warning(
                    "Attempt failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    delay_ms=delay_ms,
                    error=_error_message(e),
                )
            await asyncio.sleep(delay_ms / 1000)

    raise RuntimeError("Unexpected state in with_retry")


def async_retry(
    max_retries: int = 3,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30_000,
    retry_if: Callable[[Exception], bool] = is_retryable_error,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator form of ``with_retry`` for coroutine functions.

    Example:
        @async_retry(max_retries=2)
        async def fetch_org(org_id):
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        func_name = getattr(func, "__name__", "operation")

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                max_retries=max_retries,
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                operation_name=func_name,
                retry_if=retry_if,
            )

        return wrapper

    return decorator
