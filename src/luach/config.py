"""Luach configuration loading and validation.

Reads luach.toml from a config directory, parses all sections, and returns
a validated LuachConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from luach.google_calendar import DEFAULT_CALENDAR_NAME, DEFAULT_REQUEST_TIMEOUT_SECONDS
from luach.projector import DEFAULT_CACHE_SIZE

CONFIG_FILENAME = "luach.toml"

# Pattern matching ${VAR_NAME}, alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [luach.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from [luach.db].

    When ``dsn`` is unset the connection falls back to ``DATABASE_URL`` and
    the ``POSTGRES_*`` environment variables.
    """

    name: str | None = None
    dsn: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class GoogleConfig:
    client_id: str | None = None
    client_secret: str | None = None
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_SECONDS


@dataclass
class SchedulerConfig:
    """Progression sweep settings from [luach.scheduler]."""

    enabled: bool = True
    interval_seconds: float = 86400.0
    max_concurrent_users: int = 10
    batch_pause_seconds: float = 1.0


@dataclass
class RetryConfig:
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    exponential: bool = True


def default_external_retry() -> RetryConfig:
    return RetryConfig(max_attempts=4, base_delay_ms=1500, max_delay_ms=15000)


def default_store_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay_ms=500, max_delay_ms=5000)


@dataclass
class LuachConfig:
    """Parsed and validated configuration."""

    calendar_name: str = DEFAULT_CALENDAR_NAME
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    external_retry: RetryConfig = field(default_factory=default_external_retry)
    store_retry: RetryConfig = field(default_factory=default_store_retry)
    cache_size: int = DEFAULT_CACHE_SIZE


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUTHY:
            return True
        if normalized in _FALSY:
            return False
    raise ConfigError(f"Invalid {key}: {value!r}. Expected a boolean.")


def _positive_int(section: dict[str, Any], key: str, default: int, prefix: str) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {prefix}.{key}: {section.get(key)!r}") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {prefix}.{key}: {value!r}. Must be a positive integer.")
    return value


def _non_negative_float(section: dict[str, Any], key: str, default: float, prefix: str) -> float:
    try:
        value = float(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {prefix}.{key}: {section.get(key)!r}") from exc
    if value < 0:
        raise ConfigError(f"Invalid {prefix}.{key}: {value!r}. Must not be negative.")
    return value


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _parse_retry(section: dict[str, Any], defaults: RetryConfig, prefix: str) -> RetryConfig:
    max_attempts = _positive_int(section, "max_attempts", defaults.max_attempts, prefix)
    base_delay_ms = int(_non_negative_float(section, "base_delay_ms", defaults.base_delay_ms, prefix))
    max_delay_ms = int(_non_negative_float(section, "max_delay_ms", defaults.max_delay_ms, prefix))
    if max_delay_ms < base_delay_ms:
        raise ConfigError(f"{prefix}.max_delay_ms must be >= {prefix}.base_delay_ms")
    exponential = _parse_bool(
        section.get("exponential", defaults.exponential), f"{prefix}.exponential"
    )
    return RetryConfig(
        max_attempts=max_attempts,
        base_delay_ms=base_delay_ms,
        max_delay_ms=max_delay_ms,
        exponential=exponential,
    )


def parse_config(data: dict[str, Any]) -> LuachConfig:
    """Build a LuachConfig from already-decoded TOML data."""
    data = resolve_env_vars(data)

    luach_section = data.get("luach", {})
    if not isinstance(luach_section, dict):
        raise ConfigError("[luach] must be a table")

    calendar_name = _optional_str(luach_section, "calendar_name") or DEFAULT_CALENDAR_NAME

    # --- [luach.db] ---
    db_section = luach_section.get("db", {})
    min_pool = _positive_int(db_section, "min_pool_size", 2, "luach.db")
    max_pool = _positive_int(db_section, "max_pool_size", 10, "luach.db")
    if max_pool < min_pool:
        raise ConfigError("luach.db.max_pool_size must be >= luach.db.min_pool_size")
    db_config = DatabaseConfig(
        name=_optional_str(db_section, "name"),
        dsn=_optional_str(db_section, "dsn"),
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )

    # --- [luach.google] ---
    google_section = luach_section.get("google", {})
    google_config = GoogleConfig(
        client_id=_optional_str(google_section, "client_id") or os.environ.get("GOOGLE_CLIENT_ID"),
        client_secret=_optional_str(google_section, "client_secret")
        or os.environ.get("GOOGLE_CLIENT_SECRET"),
        request_timeout_s=_non_negative_float(
            google_section, "request_timeout_s", DEFAULT_REQUEST_TIMEOUT_SECONDS, "luach.google"
        ),
    )

    # --- [luach.logging] ---
    logging_section = luach_section.get("logging", {})
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid luach.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=_optional_str(logging_section, "log_root"),
    )

    # --- [luach.scheduler] ---
    scheduler_section = luach_section.get("scheduler", {})
    enabled_default = os.environ.get("LUACH_PROGRESSION_ENABLED", "true")
    scheduler_config = SchedulerConfig(
        enabled=_parse_bool(
            scheduler_section.get("enabled", enabled_default), "luach.scheduler.enabled"
        ),
        interval_seconds=_non_negative_float(
            scheduler_section, "interval_seconds", 86400.0, "luach.scheduler"
        ),
        max_concurrent_users=_positive_int(
            scheduler_section, "max_concurrent_users", 10, "luach.scheduler"
        ),
        batch_pause_seconds=_non_negative_float(
            scheduler_section, "batch_pause_seconds", 1.0, "luach.scheduler"
        ),
    )
    if scheduler_config.interval_seconds <= 0:
        raise ConfigError("luach.scheduler.interval_seconds must be positive")

    # --- [luach.retry.*] ---
    retry_section = luach_section.get("retry", {})
    external_retry = _parse_retry(
        retry_section.get("external", {}), default_external_retry(), "luach.retry.external"
    )
    store_retry = _parse_retry(
        retry_section.get("store", {}), default_store_retry(), "luach.retry.store"
    )

    # --- [luach.projector] ---
    projector_section = luach_section.get("projector", {})
    cache_size = _positive_int(projector_section, "cache_size", DEFAULT_CACHE_SIZE, "luach.projector")

    return LuachConfig(
        calendar_name=calendar_name,
        db=db_config,
        google=google_config,
        logging=logging_config,
        scheduler=scheduler_config,
        external_retry=external_retry,
        store_retry=store_retry,
        cache_size=cache_size,
    )


def load_config(config_dir: Path) -> LuachConfig:
    """Load and validate ``luach.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
