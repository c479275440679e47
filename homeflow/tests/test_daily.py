"""
Unit tests for the daily energy tracker.

Tests verify:
- Today's import/export are now - start of the loaded checkpoint.
- A new local day resets start = now = latest counters and persists.
- Load failures and invalid records leave the tracker uninitialised.
- Persistence failures are logged, never raised.
- "today" metric values including consumption and self-sufficiency.

CHANGELOG:
- 2026-10-19: DST change day
- 2026-10-14: today_values() coverage
- 2026-10-13: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
from homeflow.src.daily import CHECKPOINT_KEY, DailyEnergyTracker
from homeflow.src.kvstore import KeyValueStore
from homeflow.src.models import EnergyTotals


class _MemoryStore:
    """In-memory stand-in for KeyValueStore."""

    def __init__(self, records: dict[str, dict[str, Any]] | None = None) -> None:
        self.records = dict(records or {})
        self.set_calls = 0

    async def get(self, key: str) -> dict[str, Any] | None:
        return self.records.get(key)

    async def set(self, key: str, record: dict[str, Any]) -> None:
        self.set_calls += 1
        self.records[key] = dict(record)


def _checkpoint(day: int, start: tuple[float, float], now: tuple[float, float]) -> dict:
    return {
        "day": day,
        "missed_seconds": 0,
        "start": {"total_import_kwh": start[0], "total_export_kwh": start[1]},
        "now": {"total_import_kwh": now[0], "total_export_kwh": now[1]},
    }


def _totals(imported: float, exported: float) -> EnergyTotals:
    return EnergyTotals(total_import_kwh=imported, total_export_kwh=exported)


# ---------------------------------------------------------------------------
# Same-day deltas
# ---------------------------------------------------------------------------


class TestSameDay:
    @pytest.mark.asyncio
    async def test_deltas_from_loaded_checkpoint(self, clock) -> None:
        today = clock.now.date().toordinal()
        store = _MemoryStore(
            {CHECKPOINT_KEY: _checkpoint(today, start=(10, 2), now=(10, 2))}
        )
        tracker = DailyEnergyTracker(store, clock=clock)
        await tracker.load()

        await tracker.update(_totals(15, 2))

        assert tracker.today_import_kwh == pytest.approx(5.0)
        assert tracker.today_export_kwh == pytest.approx(0.0)
        # Same day: only "now" moves, nothing persisted.
        assert store.set_calls == 0

    @pytest.mark.asyncio
    async def test_counter_going_backwards_clamps_to_zero(self, clock) -> None:
        today = clock.now.date().toordinal()
        store = _MemoryStore(
            {CHECKPOINT_KEY: _checkpoint(today, start=(10, 2), now=(10, 2))}
        )
        tracker = DailyEnergyTracker(store, clock=clock)
        await tracker.load()
        await tracker.update(_totals(9, 1))
        assert tracker.today_import_kwh == 0.0
        assert tracker.today_export_kwh == 0.0

    def test_uninitialized_is_zero(self, clock) -> None:
        tracker = DailyEnergyTracker(_MemoryStore(), clock=clock)
        assert not tracker.is_initialized
        assert tracker.today_import_kwh == 0.0
        assert tracker.today_export_kwh == 0.0


# ---------------------------------------------------------------------------
# Rollover
# ---------------------------------------------------------------------------


class TestRollover:
    @pytest.mark.asyncio
    async def test_first_update_initializes_and_persists(self, clock) -> None:
        store = _MemoryStore()
        tracker = DailyEnergyTracker(store, clock=clock)
        await tracker.load()

        checkpoint = await tracker.update(_totals(100, 50))

        assert checkpoint.day == clock.now.date().toordinal()
        assert checkpoint.missed_seconds == 12 * 3600
        assert checkpoint.start == checkpoint.now
        assert store.records[CHECKPOINT_KEY]["start"]["total_import_kwh"] == 100

    @pytest.mark.asyncio
    async def test_missed_seconds_on_dst_change_day(self) -> None:
        # Clocks go forward at 02:00 CET, so noon is 11 h after midnight.
        noon = datetime(2026, 3, 29, 12, 0, tzinfo=ZoneInfo("Europe/Brussels"))
        tracker = DailyEnergyTracker(_MemoryStore(), clock=lambda: noon)

        checkpoint = await tracker.update(_totals(100, 50))

        assert checkpoint.missed_seconds == 11 * 3600

    @pytest.mark.asyncio
    async def test_new_day_resets_start_to_now(self, clock) -> None:
        store = _MemoryStore()
        tracker = DailyEnergyTracker(store, clock=clock)
        await tracker.update(_totals(100, 50))
        await tracker.update(_totals(104, 51))
        assert tracker.today_import_kwh == pytest.approx(4.0)

        clock.advance(days=1)
        checkpoint = await tracker.update(_totals(110, 52))

        assert checkpoint.start == _totals(110, 52)
        assert checkpoint.now == checkpoint.start
        assert tracker.today_import_kwh == 0.0
        assert store.set_calls == 2

    @pytest.mark.asyncio
    async def test_stale_checkpoint_resets(self, clock) -> None:
        yesterday = clock.now.date().toordinal() - 1
        store = _MemoryStore(
            {CHECKPOINT_KEY: _checkpoint(yesterday, start=(1, 1), now=(5, 5))}
        )
        tracker = DailyEnergyTracker(store, clock=clock)
        await tracker.load()
        await tracker.update(_totals(6, 5))
        assert tracker.checkpoint.day == clock.now.date().toordinal()
        assert tracker.today_import_kwh == 0.0


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_load_error_leaves_uninitialized(self, clock) -> None:
        store = AsyncMock()
        store.get = AsyncMock(side_effect=OSError("disk gone"))
        tracker = DailyEnergyTracker(store, clock=clock)

        checkpoint = await tracker.load()

        assert checkpoint.day == -1

    @pytest.mark.asyncio
    async def test_invalid_record_leaves_uninitialized(self, clock) -> None:
        store = _MemoryStore({CHECKPOINT_KEY: {"day": "not a day"}})
        tracker = DailyEnergyTracker(store, clock=clock)
        assert (await tracker.load()).day == -1

    @pytest.mark.asyncio
    async def test_persist_error_not_raised(self, clock) -> None:
        store = AsyncMock()
        store.get = AsyncMock(return_value=None)
        store.set = AsyncMock(side_effect=OSError("read-only"))
        tracker = DailyEnergyTracker(store, clock=clock)

        checkpoint = await tracker.update(_totals(1, 1))

        assert checkpoint.day == clock.now.date().toordinal()
        store.set.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_round_trip_through_sqlite(self, clock, tmp_path: Path) -> None:
        async with KeyValueStore(tmp_path / "state.db") as kv:
            await DailyEnergyTracker(kv, clock=clock).update(_totals(7, 3))
            restored = DailyEnergyTracker(kv, clock=clock)
            await restored.load()
        assert restored.checkpoint.start == _totals(7, 3)


# ---------------------------------------------------------------------------
# Published values
# ---------------------------------------------------------------------------


class TestTodayValues:
    @pytest.mark.asyncio
    async def test_with_production(self, clock) -> None:
        tracker = DailyEnergyTracker(_MemoryStore(), clock=clock)
        await tracker.update(_totals(10, 2))
        await tracker.update(_totals(12, 3))

        values = tracker.today_values(production_kwh=5.0)

        assert values["today.import_kwh"] == pytest.approx(2.0)
        assert values["today.export_kwh"] == pytest.approx(1.0)
        assert values["today.production_kwh"] == 5.0
        # consumption = 2 + 5 - 1
        assert values["today.consumption_kwh"] == pytest.approx(6.0)
        # import > 0: (5 - 1) / 6
        assert values["today.self_sufficiency_pct"] == pytest.approx(66.6667, rel=1e-4)

    def test_without_production(self, clock) -> None:
        values = DailyEnergyTracker(_MemoryStore(), clock=clock).today_values(None)
        assert set(values) == {"today.import_kwh", "today.export_kwh"}
