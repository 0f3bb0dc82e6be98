"""Tests for structured logging."""

from __future__ import annotations

import json
import logging

import pytest
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags

from luach.core.logging import (
    _NOISE_LOGGERS,
    CredentialRedactionFilter,
    _user_context,
    add_otel_context,
    add_user_context,
    configure_logging,
    get_user_context,
    reset_user_context,
    set_user_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    token = _user_context.set(None)
    yield
    _user_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord(
        name="test", level=logging.INFO, pathname="", lineno=0, msg=msg, args=args, exc_info=None
    )


class TestUserContext:
    def test_default_is_none(self):
        assert get_user_context() is None

    def test_set_and_reset(self):
        token = set_user_context("user-7")
        assert get_user_context() == "user-7"
        reset_user_context(token)
        assert get_user_context() is None

    def test_processor_injects_user(self):
        set_user_context("user-7")
        assert add_user_context(None, "info", {"event": "x"})["user_id"] == "user-7"

    def test_processor_leaves_unset_context_alone(self):
        assert "user_id" not in add_user_context(None, "info", {"event": "x"})


class TestOtelContext:
    def test_no_active_span(self):
        assert "trace_id" not in add_otel_context(None, "info", {"event": "x"})

    def test_active_span_ids_are_hex(self):
        ctx = SpanContext(
            trace_id=0x1234, span_id=0xAB, is_remote=False, trace_flags=TraceFlags(1)
        )
        with trace.use_span(NonRecordingSpan(ctx)):
            result = add_otel_context(None, "info", {"event": "x"})
        assert result["trace_id"] == f"{0x1234:032x}"
        assert result["span_id"] == f"{0xAB:016x}"


class TestCredentialRedactionFilter:
    def test_bearer_token_is_redacted(self):
        record = _record("Authorization: Bearer ya29.a0AfH6SMBx")
        CredentialRedactionFilter().filter(record)
        assert "ya29" not in record.getMessage()
        assert "[REDACTED]" in record.getMessage()

    def test_redacts_formatted_args(self):
        record = _record("refresh failed: %s", "refresh_token=1//0gabc client_secret=s3cret")
        CredentialRedactionFilter().filter(record)
        message = record.getMessage()
        assert "1//0gabc" not in message
        assert "s3cret" not in message
        assert record.args is None

    def test_clean_message_unchanged(self):
        record = _record("Synced %d years", 3)
        assert CredentialRedactionFilter().filter(record) is True
        assert record.msg == "Synced %d years"
        assert record.args == (3,)


class TestConfigureLogging:
    def test_sets_level_and_quiets_transport_loggers(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_json_file_output_carries_user_and_redacts(self, tmp_path):
        configure_logging(level="INFO", fmt="json", log_root=tmp_path)
        set_user_context("user-9")

        logging.getLogger("luach.test").info("token refreshed access_token=%s", "ya29.secret")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "luach.log").read_text().strip().splitlines()
        entry = json.loads(lines[-1])
        assert entry["user_id"] == "user-9"
        assert entry["level"] == "info"
        assert "ya29.secret" not in entry["event"]
        assert (tmp_path / "http.log").exists()
