"""Tests for core/config.py -- Settings defaults, env loading and validation."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from core.config import Settings, configure_logging, get_settings


class TestDefaults:
    def test_defaults_load_without_env(self) -> None:
        s = Settings(_env_file=None)
        assert s.suspension_threshold == 5
        assert s.throttle_free_attempts == 3
        assert s.store_failure_policy == "closed"
        assert s.suspension_is_indefinite
        assert s.throttle_db_url.startswith("sqlite:///")

    def test_env_vars_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SUSPENSION_THRESHOLD", "8")
        monkeypatch.setenv("SUSPENSION_SECONDS", "600")
        monkeypatch.setenv("STORE_FAILURE_POLICY", "open")
        s = Settings(_env_file=None)
        assert s.suspension_threshold == 8
        assert s.suspension_seconds == 600
        assert not s.suspension_is_indefinite
        assert s.store_failure_policy == "open"

    def test_get_settings_is_cached(self) -> None:
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"suspension_threshold": 0},
            {"throttle_free_attempts": -1},
            {"throttle_backoff_base_seconds": 0},
            {"throttle_backoff_base_seconds": 10, "throttle_backoff_cap_seconds": 5},
            {"suspension_seconds": -1},
            {"store_retry_seconds": -0.5},
            {"store_retry_seconds": 0},
            {"store_failure_policy": "sometimes"},
        ],
    )
    def test_rejects_unenforceable_policy(self, overrides: dict) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_fail_open_logs_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="accessguard.config"):
            Settings(_env_file=None, store_failure_policy="open")
        assert "STORE_FAILURE_POLICY=open" in caplog.text


def test_configure_logging_accepts_settings() -> None:
    configure_logging(Settings(_env_file=None, log_level="debug"))
