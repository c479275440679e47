"""
Unit tests for the signal engine.

Tests verify:
- off-grid after 60 s without import.
- no-sun after 15 min without production, with a reason that tells
  "not yet today" from "earlier today".
- high-import on the 15-minute average, with rounded published average.
- surplus activation on min + p90, deactivation on a single 0 W sample,
  cumulative thresholds across signals, and state kept while filling.

CHANGELOG:
- 2026-10-19: Idle reason coverage
- 2026-10-15: Surplus state kept while the window fills
- 2026-10-14: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import pytest
from homeflow.src.models import Measurement, SurplusSignalConfig
from homeflow.src.signals import SignalEngine, round_import_average
from homeflow.src.store import MeasurementStore


def _fill(
    store: MeasurementStore,
    count: int,
    *,
    net_w: float = 0.0,
    production_w: float = 0.0,
) -> None:
    start = store.push_count
    for offset in range(count):
        store.push(
            Measurement.from_net(
                timestamp=float(start + offset), net_w=net_w, production_w=production_w
            )
        )


def _engine(clock, **kwargs) -> SignalEngine:
    defaults = {"off_grid": False, "no_sun": False, "high_import": False}
    defaults.update(kwargs)
    return SignalEngine(clock=clock, **defaults)


# ---------------------------------------------------------------------------
# off-grid / no-sun / high-import
# ---------------------------------------------------------------------------


class TestOffGrid:
    def test_inactive_while_importing(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 120, net_w=300)
        states = _engine(clock, off_grid=True).evaluate(store)
        assert states["off_grid"].active is False

    def test_active_after_60_s_without_import(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 10, net_w=300)
        _fill(store, 59, net_w=-100)
        engine = _engine(clock, off_grid=True)
        assert engine.evaluate(store)["off_grid"].active is False

        _fill(store, 1, net_w=-100)
        assert engine.evaluate(store)["off_grid"].active is True


class TestNoSun:
    def test_producing(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 5, production_w=800)
        state = _engine(clock, no_sun=True).evaluate(store)["no_sun"]
        assert state.active is False
        assert state.reason == "Producing"

    def test_idle_below_threshold(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 100)
        state = _engine(clock, no_sun=True).evaluate(store)["no_sun"]
        assert state.active is False
        assert state.reason == "Idle for 100 s"

    def test_no_production_yet_today(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 900)
        state = _engine(clock, no_sun=True).evaluate(store)["no_sun"]
        assert state.active is True
        assert state.reason == "No production yet today"

    def test_produced_earlier_today(self, clock) -> None:
        store = MeasurementStore(1200)
        engine = _engine(clock, no_sun=True)
        _fill(store, 1, production_w=50)
        engine.evaluate(store)

        _fill(store, 960)
        state = engine.evaluate(store)["no_sun"]
        assert state.active is True
        assert state.reason == "Produced earlier today, idle for 16 min"

    def test_production_yesterday_counts_as_not_today(self, clock) -> None:
        store = MeasurementStore(1200)
        engine = _engine(clock, no_sun=True)
        _fill(store, 1, production_w=50)
        engine.evaluate(store)

        clock.advance(days=1)
        _fill(store, 1000)
        assert engine.evaluate(store)["no_sun"].reason == "No production yet today"


class TestHighImport:
    def test_active_above_threshold(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 900, net_w=2600)
        engine = _engine(clock, high_import=True)
        assert engine.evaluate(store)["high_import"].active is True
        assert engine.metric_values()["signal.high_import.average_w"] == 2600

    def test_inactive_and_rounded(self, clock) -> None:
        store = MeasurementStore(900)
        _fill(store, 900, net_w=1234)
        engine = _engine(clock, high_import=True)
        assert engine.evaluate(store)["high_import"].active is False
        assert engine.metric_values()["signal.high_import.average_w"] == 1200

    @pytest.mark.parametrize(
        ("average", "published"),
        [(0.0, 0.0), (149.0, 100.0), (1951.0, 2000.0), (2001.0, 2001.0)],
    )
    def test_round_import_average(self, average: float, published: float) -> None:
        assert round_import_average(average) == published


# ---------------------------------------------------------------------------
# Surplus
# ---------------------------------------------------------------------------


class TestSurplus:
    def test_sustained_export_activates(self, clock) -> None:
        config = SurplusSignalConfig(label="Boiler", minutes=2, watts=500)
        store = MeasurementStore(900)
        _fill(store, 120, net_w=-600)

        engine = _engine(clock, surplus=[config], base_load_variability_w=50)
        state = engine.evaluate(store)["surplus_boiler"]

        assert state.active is True

    def test_single_zero_sample_deactivates(self, clock) -> None:
        config = SurplusSignalConfig(label="Boiler", minutes=2, watts=500)
        store = MeasurementStore(900)
        _fill(store, 120, net_w=-600)
        engine = _engine(clock, surplus=[config], base_load_variability_w=50)
        assert engine.evaluate(store)["surplus_boiler"].active is True

        _fill(store, 1, net_w=0)
        assert engine.evaluate(store)["surplus_boiler"].active is False

    def test_p90_must_clear_variability(self, clock) -> None:
        config = SurplusSignalConfig(label="Boiler", minutes=1, watts=500)
        store = MeasurementStore(900)
        _fill(store, 60, net_w=-520)
        engine = _engine(clock, surplus=[config], base_load_variability_w=50)
        # min 520 > 500 but p90 520 <= 550
        assert engine.evaluate(store)["surplus_boiler"].active is False

    def test_later_signals_need_earlier_watts_too(self, clock) -> None:
        first = SurplusSignalConfig(label="Boiler", minutes=1, watts=500)
        second = SurplusSignalConfig(label="Heat pump", minutes=1, watts=300)
        store = MeasurementStore(900)
        _fill(store, 60, net_w=-700)
        engine = _engine(clock, surplus=[first, second], base_load_variability_w=50)

        states = engine.evaluate(store)

        assert states["surplus_boiler"].active is True
        # 700 <= 300 + 50 + 500
        assert states["surplus_heat_pump"].active is False

    def test_insufficient_data_keeps_previous_state(self, clock) -> None:
        config = SurplusSignalConfig(label="Boiler", minutes=2, watts=500)
        engine = _engine(clock, surplus=[config])
        store = MeasurementStore(900)
        _fill(store, 30, net_w=-900)

        state = engine.evaluate(store)["surplus_boiler"]

        assert state.active is False
        assert state.reason == "Insufficient data (30/120 samples)"

    def test_metric_values(self, clock) -> None:
        config = SurplusSignalConfig(label="Boiler", minutes=1, watts=100)
        store = MeasurementStore(900)
        _fill(store, 60, net_w=-1000)
        engine = _engine(clock, surplus=[config])
        engine.evaluate(store)

        values = engine.metric_values()

        assert values["signal.surplus_boiler.active"] is True
        assert isinstance(values["signal.surplus_boiler.reason"], str)
        assert "signal.high_import.average_w" not in values
