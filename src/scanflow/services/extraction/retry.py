"""
Retry executor for extraction calls.

Implements exponential backoff with jitter for async operations, honours
server-supplied Retry-After hints, and classifies which failures are worth
another attempt.
"""

import asyncio
import errno
import inspect
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Generic, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER_MAX_MS = 1000

DEFAULT_RETRYABLE_STATUS_CODES = frozenset(
    {408, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524}
)

DEFAULT_RETRYABLE_ERROR_PATTERNS = frozenset(
    {
        # System error codes
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "EAI_AGAIN",
        "ENETUNREACH",
        "EHOSTUNREACH",
        # Message fragments
        "connection reset",
        "connection refused",
        "timed out",
        "timeout",
        "name resolution",
        "network is unreachable",
        "overloaded",
    }
)


class RetryConfig(BaseModel):
    """
    Immutable retry policy, shared read-only across concurrent jobs.

    Attributes:
        max_attempts: Total attempts including the first one
        initial_delay_ms: Delay before the second attempt
        max_delay_ms: Cap applied to every computed delay
        backoff_multiplier: Exponential growth factor per attempt
        jitter_max_ms: Upper bound of the random delay added to each wait
        retryable_error_patterns: Error codes / message fragments worth retrying
        retryable_status_codes: HTTP status codes worth retrying
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(DEFAULT_MAX_ATTEMPTS, ge=1)
    initial_delay_ms: int = Field(DEFAULT_INITIAL_DELAY_MS, ge=0)
    max_delay_ms: int = Field(DEFAULT_MAX_DELAY_MS, ge=0)
    backoff_multiplier: float = Field(DEFAULT_BACKOFF_MULTIPLIER, gt=1.0)
    jitter_max_ms: int = Field(DEFAULT_JITTER_MAX_MS, ge=0)
    retryable_error_patterns: frozenset[str] = DEFAULT_RETRYABLE_ERROR_PATTERNS
    retryable_status_codes: frozenset[int] = DEFAULT_RETRYABLE_STATUS_CODES

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "RetryConfig":
        if self.initial_delay_ms > self.max_delay_ms:
            raise ValueError("initial_delay_ms must not exceed max_delay_ms")
        return self


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass(frozen=True)
class AttemptOutcome:
    """A failed attempt that is about to be retried."""

    attempt: int  # 0-based index of the attempt that failed
    error: Exception
    delay_ms: int  # wait before the next attempt
    total_delay_ms: int  # includes delay_ms


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Terminal result of a retry sequence."""

    success: bool
    attempts: int
    total_delay_ms: int
    value: T | None = None
    error: Exception | None = None

    @classmethod
    def ok(cls, value: T, attempts: int, total_delay_ms: int) -> "RetryResult[T]":
        return cls(success=True, attempts=attempts, total_delay_ms=total_delay_ms, value=value)

    @classmethod
    def failed(cls, error: Exception, attempts: int, total_delay_ms: int) -> "RetryResult[T]":
        return cls(success=False, attempts=attempts, total_delay_ms=total_delay_ms, error=error)

    def unwrap(self) -> T:
        """Return the value or raise the last error."""
        if not self.success:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]


RetryCallback = Callable[[AttemptOutcome], Awaitable[None] | None]


# =============================================================================
# Error classification
# =============================================================================


def _attr(obj: Any, name: str) -> Any:
    # httpx raises RuntimeError from some properties when the request is unset
    try:
        return getattr(obj, name, None)
    except RuntimeError:
        return None


def _get_status_code(error: BaseException) -> int | None:
    """Numeric status carried by the error or its response."""
    candidates = (
        _attr(error, "status_code"),
        _attr(error, "status"),
        _attr(_attr(error, "response"), "status_code"),
    )
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _get_error_code(error: BaseException) -> str | None:
    """System/network error code, e.g. ECONNRESET."""
    code = _attr(error, "code")
    if isinstance(code, str) and code:
        return code
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    return None


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return True
    return _attr(error, "is_timeout") is True


def is_retryable(error: BaseException | None, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> bool:
    """
    Decide whether a failure is transient.

    Args:
        error: The exception raised by the operation
        config: Retry policy holding status codes and error patterns

    Returns:
        True if another attempt may succeed
    """
    if error is None:
        return False

    status_code = _get_status_code(error)
    if status_code is not None and status_code in config.retryable_status_codes:
        return True

    code = _get_error_code(error)
    if code and any(pattern in code for pattern in config.retryable_error_patterns):
        return True

    message = str(error).lower()
    if message and any(pattern.lower() in message for pattern in config.retryable_error_patterns):
        return True

    return _is_timeout(error)


# =============================================================================
# Delay computation
# =============================================================================


def _header_value(headers: Any, name: str) -> Any:
    items = _attr(headers, "items")
    if not callable(items):
        return None
    for key, value in items():
        if str(key).lower() == name:
            return value
    return None


def get_retry_after_seconds(
    error: BaseException,
    now: datetime | None = None,
) -> float | None:
    """
    Read a Retry-After hint from the error's response headers.

    Accepts integer seconds or an HTTP-date. Values that fail to parse
    are ignored.

    Args:
        error: Exception possibly carrying a response
        now: Reference time for HTTP-date values (defaults to current UTC)

    Returns:
        Non-negative seconds to wait, or None when no usable hint exists
    """
    headers = _attr(_attr(error, "response"), "headers")
    if headers is None:
        headers = _attr(error, "headers")
    if headers is None:
        return None

    raw = _header_value(headers, "retry-after")
    if raw is None:
        return None
    raw = str(raw).strip()

    try:
        return float(max(0, int(raw)))
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Ignoring unparseable Retry-After value: {raw!r}")
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


def calculate_retry_delay(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    retry_after_seconds: float | None = None,
) -> int:
    """
    Calculate the wait before the next attempt.

    Args:
        attempt: 0-based index of the attempt that just failed
        config: Retry policy
        retry_after_seconds: Server-supplied hint, replaces exponential backoff

    Returns:
        Delay in whole milliseconds, capped at config.max_delay_ms
    """
    jitter = random.uniform(0, config.jitter_max_ms) if config.jitter_max_ms > 0 else 0.0

    if retry_after_seconds is not None:
        base = max(0.0, retry_after_seconds) * 1000
    else:
        try:
            base = config.initial_delay_ms * (config.backoff_multiplier**attempt)
        except OverflowError:
            base = float(config.max_delay_ms)

    return int(math.floor(min(base + jitter, config.max_delay_ms)))


# =============================================================================
# Executor
# =============================================================================


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_retry: RetryCallback | None = None,
) -> RetryResult[T]:
    """
    Run an async operation with exponential backoff.

    The operation is attempted up to ``config.max_attempts`` times. A
    non-retryable error, or a failure on the last allowed attempt, ends the
    sequence immediately with the error in the result.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        config: Retry policy
        on_retry: Called before each backoff sleep; may be sync or async

    Returns:
        RetryResult with either the value or the last error
    """
    attempt = 0
    total_delay_ms = 0

    while True:
        try:
            value = await operation()
        except Exception as e:
            attempts_made = attempt + 1

            if not is_retryable(e, config):
                logger.info(
                    f"Not retrying after attempt {attempts_made}: {type(e).__name__}: {e}"
                )
                return RetryResult.failed(e, attempts_made, total_delay_ms)

            if attempts_made >= config.max_attempts:
                logger.warning(
                    f"Giving up after {attempts_made}/{config.max_attempts} attempts: {e}"
                )
                return RetryResult.failed(e, attempts_made, total_delay_ms)

            delay_ms = calculate_retry_delay(attempt, config, get_retry_after_seconds(e))
            total_delay_ms += delay_ms
            logger.warning(
                f"Attempt {attempts_made}/{config.max_attempts} failed: {e}. "
                f"Retrying in {delay_ms}ms"
            )

            if on_retry is not None:
                callback_result = on_retry(
                    AttemptOutcome(
                        attempt=attempt,
                        error=e,
                        delay_ms=delay_ms,
                        total_delay_ms=total_delay_ms,
                    )
                )
                if inspect.isawaitable(callback_result):
                    await callback_result

            await asyncio.sleep(delay_ms / 1000)
            attempt += 1
        else:
            return RetryResult.ok(value, attempt + 1, total_delay_ms)
