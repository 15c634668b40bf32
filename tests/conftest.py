"""
tests/conftest.py -- Shared fixtures for access guard tests.

This module provides:
  - FakeClock: a controllable UTC clock injected into ThrottleStore so
    backoff and suspension expiry can be tested without sleeping
  - store: ThrottleStore on a private in-memory SQLite database
  - settings: Settings with explicit policy values (no .env lookup)
  - guard: AccessGuard wired to store + settings

Plain 'sqlite:///:memory:' is fine here: every test runs in one thread and
SQLAlchemy keeps a single connection per thread for in-memory SQLite.
Tests that need real concurrency build a file-backed store under tmp_path.
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from core.config import Settings
from guard.service import AccessGuard
from guard.store import ThrottleStore

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    """Settings with the policy values the tests assume, ignoring any .env file."""
    values = {
        "suspension_threshold": 5,
        "throttle_free_attempts": 3,
        "throttle_backoff_base_seconds": 2.0,
        "throttle_backoff_cap_seconds": 60.0,
        "suspension_seconds": 0,
        "store_failure_policy": "closed",
        "store_retry_seconds": 5.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[ThrottleStore, None, None]:
    s = ThrottleStore("sqlite:///:memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def guard(store: ThrottleStore, settings: Settings) -> AccessGuard:
    return AccessGuard(store, settings)
