"""
Shared test fixtures for homeflow daemon tests.

All homeflow env vars are cleaned before each test to ensure isolation.
A settable clock fixture drives the components that take a ``clock``
callable (daily tracker, signal engine).

CHANGELOG:
- 2026-10-14: Add clock fixture
- 2026-10-12: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

# All HomeflowSettings environment variable names, used for cleanup.
_ALL_HOMEFLOW_ENV_VARS = (
    "INVERTER_HOST",
    "INVERTER_PORT",
    "INVERTER_UNIT_ID",
    "INVERTER_POLL_INTERVAL_MS",
    "DISCOVERY_INTERVAL_MS",
    "METER_GROUP",
    "METER_PORT",
    "METER_INTERFACE",
    "MEMBERSHIP_REFRESH_S",
    "LISTENER_RESTART_DELAY_S",
    "RECENT_MINUTES",
    "RECENT_MODE",
    "SIGNAL_OFF_GRID",
    "SIGNAL_NO_SUN",
    "SIGNAL_HIGH_IMPORT",
    "SURPLUS_SIGNALS",
    "BASE_LOAD_VARIABILITY_W",
    "STATE_PATH",
    "HEALTH_PATH",
    "BRIDGE_URL",
    "BRIDGE_TOKEN",
    "PUBLISH_INTERVAL_S",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_homeflow_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all homeflow env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_HOMEFLOW_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


class FakeClock:
    """Settable local clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    """Clock starting at noon on 2026-06-21 (UTC)."""
    return FakeClock(datetime(2026, 6, 21, 12, 0, tzinfo=timezone.utc))
