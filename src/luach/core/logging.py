"""Structured logging for Luach.

Uses structlog's ProcessorFormatter so every ``logging.getLogger(__name__)``
call site renders through one pipeline.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The user currently being processed and the OTel trace context are injected
by processors reading a ContextVar and the current span.

When ``log_root`` is set, JSON copies are written to::

    logs/
      luach.log       # application logs
      http.log        # httpx / httpcore / asyncpg transport logs
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token
from pathlib import Path

import structlog
from opentelemetry import trace

from luach.google_calendar import redact_credentials

_user_context: ContextVar[str | None] = ContextVar("luach_user_id", default=None)


def set_user_context(user_id: str | None) -> Token:
    """Set the user id for the current async context."""
    return _user_context.set(user_id)


def reset_user_context(token: Token) -> None:
    _user_context.reset(token)


def get_user_context() -> str | None:
    return _user_context.get()


def add_user_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``user_id`` from the ContextVar into the event dict."""
    user_id = _user_context.get()
    if user_id is not None:
        event_dict["user_id"] = user_id
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


class CredentialRedactionFilter(logging.Filter):
    """Scrub OAuth tokens and client secrets from rendered log messages.

    Never drops a record. The formatted message replaces ``msg`` and the
    args are cleared so handlers see the redacted text only.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncpg",
)

_APP_LOG = "luach.log"
_TRANSPORT_LOG = "http.log"


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_user_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    handler.addFilter(CredentialRedactionFilter())
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_root:
        Directory for JSON log files; created if missing.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CredentialRedactionFilter())

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        noise = logging.getLogger(name)
        noise.handlers.clear()
        noise.setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_processors = _build_processors(time_fmt="iso")
        root.addHandler(_make_file_handler(log_root / _APP_LOG, file_processors))

        transport_handler = _make_file_handler(log_root / _TRANSPORT_LOG, file_processors)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
