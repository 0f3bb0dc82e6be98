"""Tests for luach.toml loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from luach.config import ConfigError, LuachConfig, load_config, parse_config, resolve_env_vars

pytestmark = pytest.mark.unit


def _write(tmp_path: Path, text: str) -> Path:
    (tmp_path / "luach.toml").write_text(text)
    return tmp_path


class TestLoadConfig:
    def test_defaults_for_minimal_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("LUACH_PROGRESSION_ENABLED", raising=False)
        config = load_config(_write(tmp_path, "[luach]\n"))

        assert config.calendar_name == "Luach"
        assert config.scheduler.enabled is True
        assert config.scheduler.interval_seconds == 86400
        assert config.scheduler.max_concurrent_users == 10
        assert config.scheduler.batch_pause_seconds == 1
        assert (config.external_retry.max_attempts, config.external_retry.base_delay_ms) == (4, 1500)
        assert config.external_retry.max_delay_ms == 15000
        assert (config.store_retry.max_attempts, config.store_retry.max_delay_ms) == (3, 5000)
        assert config.cache_size == 1000
        assert config.logging.format == "text"

    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_GOOGLE_SECRET", "s3cret")
        config = load_config(
            _write(
                tmp_path,
                """
[luach]
calendar_name = "Hebrew Dates"

[luach.db]
dsn = "postgres://u:p@db:5433/luach"
max_pool_size = 4

[luach.google]
client_id = "cid"
client_secret = "${TEST_GOOGLE_SECRET}"

[luach.logging]
level = "debug"
format = "json"

[luach.scheduler]
enabled = false
interval_seconds = 600
max_concurrent_users = 3

[luach.retry.external]
max_attempts = 2
base_delay_ms = 100
max_delay_ms = 400
exponential = false

[luach.projector]
cache_size = 50
""",
            )
        )

        assert config.calendar_name == "Hebrew Dates"
        assert config.db.dsn == "postgres://u:p@db:5433/luach"
        assert config.db.max_pool_size == 4
        assert config.google.client_secret == "s3cret"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.scheduler.enabled is False
        assert config.scheduler.interval_seconds == 600
        assert config.external_retry.exponential is False
        assert config.external_retry.max_delay_ms == 400
        assert config.store_retry.max_attempts == 3
        assert config.cache_size == 50

    def test_scheduler_enabled_from_environment(self, monkeypatch):
        monkeypatch.setenv("LUACH_PROGRESSION_ENABLED", "false")
        assert parse_config({}).scheduler.enabled is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[luach\n"))

    @pytest.mark.parametrize(
        "text",
        [
            '[luach.logging]\nformat = "xml"\n',
            "[luach.scheduler]\nmax_concurrent_users = 0\n",
            "[luach.scheduler]\ninterval_seconds = 0\n",
            '[luach.scheduler]\nenabled = "maybe"\n',
            "[luach.retry.store]\nbase_delay_ms = 900\nmax_delay_ms = 100\n",
            "[luach.projector]\ncache_size = -1\n",
            "[luach.db]\nmin_pool_size = 5\nmax_pool_size = 2\n",
        ],
    )
    def test_invalid_values(self, tmp_path, text):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, text))

    def test_default_config_object(self):
        config = LuachConfig()
        assert config.external_retry.max_attempts == 4
        assert config.store_retry.base_delay_ms == 500


class TestResolveEnvVars:
    def test_nested_resolution(self, monkeypatch):
        monkeypatch.setenv("A_VAR", "alpha")
        assert resolve_env_vars({"x": ["${A_VAR}-1", 2], "y": True}) == {
            "x": ["alpha-1", 2],
            "y": True,
        }

    def test_missing_variables_reported_together(self, monkeypatch):
        monkeypatch.delenv("MISSING_ONE", raising=False)
        monkeypatch.delenv("MISSING_TWO", raising=False)
        with pytest.raises(ConfigError, match="MISSING_ONE, MISSING_TWO"):
            resolve_env_vars("${MISSING_ONE}/${MISSING_TWO}")
