"""Tests for retry policies and failure classification."""

from __future__ import annotations

import asyncpg
import httpx
import pytest

from luach.config import RetryConfig
from luach.google_calendar import CalendarRequestError, CalendarTransportError
from luach.retry import (
    RetryPolicy,
    describe_failure,
    external_policy,
    is_retryable_calendar_error,
    is_transient_store_error,
    store_policy,
    with_retry,
)
from tests.fakes import RecordingSleep

pytestmark = pytest.mark.unit


class _Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestWithRetry:
    async def test_two_retryable_failures_then_success(self):
        sleep = RecordingSleep()
        operation = _Flaky(
            [
                CalendarRequestError(status_code=503, message="backend"),
                CalendarRequestError(status_code=429, message="slow down"),
            ]
        )
        result = await with_retry(operation, external_policy(), sleep=sleep)
        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.5, 3.0]

    async def test_non_retryable_failure_propagates_immediately(self):
        sleep = RecordingSleep()
        error = CalendarRequestError(status_code=400, message="bad request")
        operation = _Flaky([error])
        with pytest.raises(CalendarRequestError) as exc_info:
            await with_retry(operation, external_policy(), sleep=sleep)
        assert exc_info.value is error
        assert operation.calls == 1
        assert sleep.delays == []
        assert any("retryable=False" in note for note in exc_info.value.__notes__)

    async def test_exhaustion_reraises_last_error(self):
        sleep = RecordingSleep()
        operation = _Flaky([CalendarRequestError(status_code=500, message="boom")] * 4)
        with pytest.raises(CalendarRequestError) as exc_info:
            await with_retry(operation, external_policy(), operation_name="insert", sleep=sleep)
        assert operation.calls == 4
        assert sleep.delays == [1.5, 3.0, 6.0]
        assert "insert: gave up after 4 attempt(s)" in exc_info.value.__notes__[0]

    async def test_retry_is_logged_at_warning(self, caplog):
        operation = _Flaky([CalendarTransportError("reset")])
        with caplog.at_level("WARNING", logger="luach.retry"):
            await with_retry(operation, external_policy(), sleep=RecordingSleep())
        assert "retrying" in caplog.text


class TestDelays:
    def test_exponential_delay_is_capped(self):
        policy = external_policy()
        assert [policy.delay_for(k) for k in range(1, 6)] == [1.5, 3.0, 6.0, 12.0, 15.0]

    def test_constant_delay(self):
        policy = RetryPolicy(
            name="flat",
            max_attempts=3,
            base_delay=2.0,
            max_delay=10.0,
            retry_if=lambda exc: True,
            exponential=False,
        )
        assert [policy.delay_for(k) for k in (1, 2, 3)] == [2.0, 2.0, 2.0]

    def test_defaults(self):
        external, store = external_policy(), store_policy()
        assert (external.max_attempts, external.base_delay, external.max_delay) == (4, 1.5, 15.0)
        assert (store.max_attempts, store.base_delay, store.max_delay) == (3, 0.5, 5.0)

    def test_policy_from_config(self):
        policy = external_policy(
            RetryConfig(max_attempts=2, base_delay_ms=100, max_delay_ms=250, exponential=False)
        )
        assert policy.max_attempts == 2
        assert policy.base_delay == pytest.approx(0.1)
        assert policy.max_delay == pytest.approx(0.25)
        assert not policy.exponential

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(name="x", max_attempts=0, base_delay=0, max_delay=0, retry_if=bool)


class TestCalendarClassification:
    @pytest.mark.parametrize("status", [500, 502, 503, 504, 429])
    def test_server_and_throttle_errors_retry(self, status):
        assert is_retryable_calendar_error(CalendarRequestError(status_code=status, message="x"))

    @pytest.mark.parametrize("status", [400, 401, 404, 409, 410])
    def test_client_errors_do_not_retry(self, status):
        assert not is_retryable_calendar_error(
            CalendarRequestError(status_code=status, message="x")
        )

    @pytest.mark.parametrize("reason", ["quotaExceeded", "userRateLimitExceeded", "rateLimitExceeded"])
    def test_rate_limited_403_retries(self, reason):
        assert is_retryable_calendar_error(
            CalendarRequestError(status_code=403, message="Forbidden", reason=reason)
        )

    def test_rate_limit_in_message_retries(self):
        assert is_retryable_calendar_error(
            CalendarRequestError(status_code=403, message="Rate Limit Exceeded: rateLimitExceeded")
        )

    def test_plain_403_does_not_retry(self):
        assert not is_retryable_calendar_error(
            CalendarRequestError(status_code=403, message="forbidden", reason="forbidden")
        )

    def test_transport_errors_retry(self):
        assert is_retryable_calendar_error(CalendarTransportError("reset"))
        assert is_retryable_calendar_error(httpx.ConnectTimeout("timed out"))

    def test_other_errors_do_not_retry(self):
        assert not is_retryable_calendar_error(ValueError("nope"))


class TestStoreClassification:
    def test_connection_errors_retry(self):
        assert is_transient_store_error(ConnectionResetError("reset by peer"))
        assert is_transient_store_error(TimeoutError())
        assert is_transient_store_error(asyncpg.exceptions.TooManyConnectionsError("too many"))

    def test_message_markers_retry(self):
        assert is_transient_store_error(RuntimeError("Connection terminated unexpectedly"))
        assert is_transient_store_error(RuntimeError("server closed the connection"))

    def test_constraint_violations_never_retry(self):
        assert not is_transient_store_error(
            asyncpg.exceptions.UniqueViolationError("duplicate key; connection terminated")
        )
        assert not is_transient_store_error(asyncpg.exceptions.CheckViolationError("check"))

    def test_other_errors_do_not_retry(self):
        assert not is_transient_store_error(ValueError("bad value"))


class TestDescribeFailure:
    def test_calendar_not_found(self):
        info = describe_failure(
            CalendarRequestError(status_code=404, message="Not Found"), external_policy()
        )
        assert info.code == "calendar_not_found"
        assert info.status_code == 404
        assert not info.retryable

    def test_throttled(self):
        info = describe_failure(
            CalendarRequestError(status_code=429, message="slow"), external_policy()
        )
        assert info.code == "calendar_unavailable"
        assert info.retryable

    def test_generic_error_is_sanitized(self):
        info = describe_failure(RuntimeError("failed with access_token=abc123"))
        assert info.code == "internal_error"
        assert "abc123" not in info.message
