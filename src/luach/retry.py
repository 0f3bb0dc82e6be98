"""Async retry with exponential backoff and failure classification."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import asyncpg
import httpx

from luach.google_calendar import (
    CalendarError,
    CalendarRequestError,
    CalendarTransportError,
    sanitize_error_message,
)

if TYPE_CHECKING:
    from luach.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryPredicate = Callable[[BaseException], bool]

RATE_LIMIT_REASONS = ("quotaExceeded", "userRateLimitExceeded", "rateLimitExceeded")

_TRANSIENT_STORE_MARKERS = (
    "connection terminated",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "timeout expired",
    "could not connect",
)

_TRANSIENT_STORE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    ConnectionError,
    TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    base_delay: float
    max_delay: float
    retry_if: RetryPredicate
    exponential: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number *attempt* (1-based)."""
        if not self.exponential:
            return min(self.base_delay, self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable(self, exc: BaseException) -> bool:
        return self.retry_if(exc)


@dataclass(frozen=True)
class FailureInfo:
    code: str
    message: str
    retryable: bool
    status_code: int | None = None


def is_retryable_calendar_error(exc: BaseException) -> bool:
    if isinstance(exc, (CalendarTransportError, httpx.TransportError)):
        return True
    if not isinstance(exc, CalendarRequestError):
        return False
    if exc.status_code >= 500 or exc.status_code == 429:
        return True
    if exc.status_code == 403:
        haystack = f"{exc.reason or ''} {exc.message}"
        return any(reason in haystack for reason in RATE_LIMIT_REASONS)
    return False


def is_transient_store_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncpg.exceptions.IntegrityConstraintViolationError):
        return False
    if isinstance(exc, _TRANSIENT_STORE_ERRORS):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_STORE_MARKERS)


DEFAULT_EXTERNAL_ATTEMPTS = 4
DEFAULT_EXTERNAL_BASE_DELAY = 1.5
DEFAULT_EXTERNAL_MAX_DELAY = 15.0
DEFAULT_STORE_ATTEMPTS = 3
DEFAULT_STORE_BASE_DELAY = 0.5
DEFAULT_STORE_MAX_DELAY = 5.0


def external_policy(config: RetryConfig | None = None) -> RetryPolicy:
    """Policy for Google API calls."""
    if config is None:
        return RetryPolicy(
            name="external",
            max_attempts=DEFAULT_EXTERNAL_ATTEMPTS,
            base_delay=DEFAULT_EXTERNAL_BASE_DELAY,
            max_delay=DEFAULT_EXTERNAL_MAX_DELAY,
            retry_if=is_retryable_calendar_error,
        )
    return RetryPolicy(
        name="external",
        max_attempts=config.max_attempts,
        base_delay=config.base_delay_ms / 1000,
        max_delay=config.max_delay_ms / 1000,
        exponential=config.exponential,
        retry_if=is_retryable_calendar_error,
    )


def store_policy(config: RetryConfig | None = None) -> RetryPolicy:
    """Policy for database writes."""
    if config is None:
        return RetryPolicy(
            name="store",
            max_attempts=DEFAULT_STORE_ATTEMPTS,
            base_delay=DEFAULT_STORE_BASE_DELAY,
            max_delay=DEFAULT_STORE_MAX_DELAY,
            retry_if=is_transient_store_error,
        )
    return RetryPolicy(
        name="store",
        max_attempts=config.max_attempts,
        base_delay=config.base_delay_ms / 1000,
        max_delay=config.max_delay_ms / 1000,
        exponential=config.exponential,
        retry_if=is_transient_store_error,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run *operation* until it succeeds or *policy* gives up.

    The last exception is re-raised unchanged apart from a note recording the
    attempts made and whether the failure was classified as retryable.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            retryable = policy.is_retryable(exc)
            if not retryable or attempt >= policy.max_attempts:
                exc.add_note(
                    f"{operation_name}: gave up after {attempt} attempt(s) "
                    f"({policy.name} policy, retryable={retryable})"
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d, %s policy); retrying in %.2fs: %s",
                operation_name,
                attempt,
                policy.max_attempts,
                policy.name,
                delay,
                exc,
            )
            await sleep(delay)


def describe_failure(exc: BaseException, policy: RetryPolicy | None = None) -> FailureInfo:
    """Summarize *exc* for user-facing messaging."""
    retryable = policy.is_retryable(exc) if policy is not None else False
    if isinstance(exc, CalendarRequestError):
        if exc.status_code in (404, 410):
            code = "calendar_not_found"
        elif exc.status_code in (401, 403) and not retryable:
            code = "calendar_access_denied"
        elif retryable:
            code = "calendar_unavailable"
        else:
            code = "calendar_rejected"
        return FailureInfo(
            code=code,
            message=exc.message,
            retryable=retryable,
            status_code=exc.status_code,
        )
    if isinstance(exc, (CalendarTransportError, httpx.TransportError)):
        return FailureInfo(
            code="calendar_unreachable",
            message=sanitize_error_message(str(exc)),
            retryable=retryable,
        )
    if isinstance(exc, CalendarError):
        return FailureInfo(
            code="calendar_error",
            message=sanitize_error_message(str(exc)),
            retryable=retryable,
        )
    if isinstance(exc, asyncpg.PostgresError):
        return FailureInfo(
            code="store_error",
            message=sanitize_error_message(str(exc)),
            retryable=retryable,
        )
    return FailureInfo(
        code="internal_error",
        message=sanitize_error_message(str(exc)) or type(exc).__name__,
        retryable=retryable,
    )
