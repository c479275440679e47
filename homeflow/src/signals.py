"""
Condition signals evaluated against the measurement window.

Every fusion step re-evaluates each enabled signal independently:

- off-grid: no grid import for at least 60 s.
- no-sun: no production for at least 15 min.
- high-import: 15-minute average import above 2500 W.
- surplus (user-configured, in order): sustained export large enough to
  run the signal's load on top of every earlier signal's load.

Windows do the debouncing: a signal only flips when the whole trailing
window agrees, so short spikes do not toggle loads.

CHANGELOG:
- 2026-10-19: Idle reason while below the no-sun threshold
- 2026-10-15: Keep previous surplus state while the window is still filling
- 2026-10-14: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import date, datetime

from homeflow.src.metrics import surplus_key
from homeflow.src.models import SignalState, SurplusSignalConfig
from homeflow.src.stats import percentile_nearest_rank
from homeflow.src.store import MeasurementStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OFF_GRID_AFTER_S: int = 60
NO_SUN_AFTER_S: int = 900
HIGH_IMPORT_WINDOW_S: int = 900
HIGH_IMPORT_THRESHOLD_W: float = 2500.0
HIGH_IMPORT_ROUND_BELOW_W: float = 2000.0
HIGH_IMPORT_ROUND_TO_W: float = 100.0
SURPLUS_PERCENTILE: float = 0.9

OFF_GRID: str = "off_grid"
NO_SUN: str = "no_sun"
HIGH_IMPORT: str = "high_import"


def _local_now() -> datetime:
    return datetime.now().astimezone()


def round_import_average(average_w: float) -> float:
    """Round to the nearest 100 W below 2000 W to reduce publish churn."""
    if average_w < HIGH_IMPORT_ROUND_BELOW_W:
        return round(average_w / HIGH_IMPORT_ROUND_TO_W) * HIGH_IMPORT_ROUND_TO_W
    return average_w


class SignalEngine:
    """Evaluates the configured signals.

    Args:
        off_grid: Enable the off-grid signal.
        no_sun: Enable the no-sun signal.
        high_import: Enable the high-import signal.
        surplus: Surplus signals in priority order.
        base_load_variability_w: Headroom added to every surplus threshold.
        clock: Returns the current local time; injectable for tests.
    """

    def __init__(
        self,
        *,
        off_grid: bool = True,
        no_sun: bool = True,
        high_import: bool = True,
        surplus: Sequence[SurplusSignalConfig] = (),
        base_load_variability_w: float = 50.0,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._off_grid = off_grid
        self._no_sun = no_sun
        self._high_import = high_import
        self._surplus = list(surplus)
        self._base_load_variability_w = base_load_variability_w
        self._clock = clock
        self._states: dict[str, SignalState] = {}
        self._high_import_average_w: float = 0.0
        self._last_production_day: date | None = None

    @property
    def states(self) -> dict[str, SignalState]:
        return dict(self._states)

    @property
    def high_import_average_w(self) -> float:
        return self._high_import_average_w

    def evaluate(self, store: MeasurementStore) -> dict[str, SignalState]:
        """Recompute every enabled signal from *store*."""
        now = self._clock()
        latest = store.latest()
        if latest is not None and latest.production_w > 0:
            self._last_production_day = now.date()

        if self._off_grid:
            self._states[OFF_GRID] = self._evaluate_off_grid(store)
        if self._no_sun:
            self._states[NO_SUN] = self._evaluate_no_sun(store, now.date())
        if self._high_import:
            self._states[HIGH_IMPORT] = self._evaluate_high_import(store)

        prior_watts = 0.0
        for config in self._surplus:
            key = surplus_key(config.label)
            self._states[key] = self._evaluate_surplus(store, config, key, prior_watts)
            prior_watts += config.watts

        return self.states

    def metric_values(self) -> dict[str, bool | str | float]:
        """Published values for the current signal states."""
        values: dict[str, bool | str | float] = {}
        for key, state in self._states.items():
            values[f"signal.{key}.active"] = state.active
            values[f"signal.{key}.reason"] = state.reason
        if self._high_import:
            values["signal.high_import.average_w"] = round_import_average(
                self._high_import_average_w
            )
        return values

    # ------------------------------------------------------------------
    # Individual signals
    # ------------------------------------------------------------------

    def _evaluate_off_grid(self, store: MeasurementStore) -> SignalState:
        seconds = store.seconds_since_last_positive("import_w")
        if seconds >= OFF_GRID_AFTER_S:
            return SignalState(active=True, reason=f"No grid import for {seconds} s")
        return SignalState(active=False, reason=f"Grid import seen {seconds} s ago")

    def _evaluate_no_sun(self, store: MeasurementStore, today: date) -> SignalState:
        seconds = store.seconds_since_last_positive("production_w")
        if seconds == 0:
            return SignalState(active=False, reason="Producing")
        if seconds < NO_SUN_AFTER_S:
            return SignalState(active=False, reason=f"Idle for {seconds} s")
        if self._last_production_day != today:
            return SignalState(active=True, reason="No production yet today")
        return SignalState(
            active=True,
            reason=f"Produced earlier today, idle for {seconds // 60} min",
        )

    def _evaluate_high_import(self, store: MeasurementStore) -> SignalState:
        average = store.windowed_average("import_w", HIGH_IMPORT_WINDOW_S)
        self._high_import_average_w = average
        if average > HIGH_IMPORT_THRESHOLD_W:
            return SignalState(
                active=True,
                reason=f"15 min average import {average:.0f} W",
            )
        return SignalState(
            active=False,
            reason=f"15 min average import {round_import_average(average):.0f} W",
        )

    def _evaluate_surplus(
        self,
        store: MeasurementStore,
        config: SurplusSignalConfig,
        key: str,
        prior_watts: float,
    ) -> SignalState:
        needed = config.minutes * 60
        samples = store.tail("export_w", needed)
        previous = self._states.get(key, SignalState())
        if len(samples) < needed:
            return SignalState(
                active=previous.active,
                reason=f"Insufficient data ({len(samples)}/{needed} samples)",
            )

        minimum = min(samples)
        p90 = percentile_nearest_rank(samples, SURPLUS_PERCENTILE)
        threshold = config.watts + self._base_load_variability_w + prior_watts
        active = minimum > config.watts and p90 > threshold
        if active != previous.active:
            logger.info(
                "Surplus signal '%s' %s (min %.0f W, p90 %.0f W, threshold %.0f W)",
                config.label,
                "on" if active else "off",
                minimum,
                p90,
                threshold,
            )
        return SignalState(
            active=active,
            reason=(
                f"Export over {config.minutes} min: min {minimum:.0f} W "
                f"(needs > {config.watts:.0f} W), p90 {p90:.0f} W "
                f"(needs > {threshold:.0f} W)"
            ),
        )
