"""
Fusion of energy meter datagrams with the latest inverter production.

Each decoded meter datagram triggers exactly one fusion step:

1. Discard it unless discovery has finished.
2. Read the latest inverter production.
3. Build a Measurement (net power split into import/export) and push it
   into the MeasurementStore.
4. Recompute the "recent" aggregates and the condition signals.
5. Publish live, recent and signal values.

Datagrams are queued by the listener and consumed by a single task, so
fusion steps never interleave and ring-buffer writes stay in arrival order.

CHANGELOG:
- 2026-10-15: Exponential "recent" smoothing variant (RECENT_MODE)
- 2026-10-14: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from homeflow.src.discovery import DiscoveryGate
from homeflow.src.metrics import FLOWS
from homeflow.src.models import Measurement
from homeflow.src.publisher import Value, ValuePublisher
from homeflow.src.signals import SignalEngine
from homeflow.src.speedwire import MeterFrame
from homeflow.src.stats import (
    RunningAverage,
    measurement_self_sufficiency,
    self_sufficiency,
)
from homeflow.src.store import MeasurementStore

logger = logging.getLogger(__name__)

QUEUE_MAXSIZE: int = 600
"""Pending datagrams before new ones are dropped (10 min at 1 Hz)."""

_QUEUE_POLL_S: float = 0.5

RECENT_WINDOW: str = "window"
RECENT_EXPONENTIAL: str = "exponential"

UNAVAILABLE_VALUES: dict[str, bool] = {
    "live.import_active": False,
    "live.export_active": False,
    "recent.import_active": False,
    "recent.export_active": False,
}
"""Values published when the energy meter connection is lost."""


class FusionEngine:
    """Serialises fusion steps and publishes their results.

    Args:
        store: Ring buffer of measurements.
        gate: Discovery gate; steps before ``ready`` are discarded.
        publisher: Destination of the published values.
        signals: Signal engine evaluated after every push.
        production_source: Returns the latest inverter production (W), or
            None while unknown.
        recent_minutes: Window of the "recent" group.
        recent_mode: ``"window"`` for an arithmetic mean over the window,
            ``"exponential"`` for a capped running average.
    """

    def __init__(
        self,
        *,
        store: MeasurementStore,
        gate: DiscoveryGate,
        publisher: ValuePublisher,
        signals: SignalEngine,
        production_source: Callable[[], float | None],
        recent_minutes: int = 3,
        recent_mode: str = RECENT_WINDOW,
    ) -> None:
        if recent_mode not in (RECENT_WINDOW, RECENT_EXPONENTIAL):
            msg = f"Unknown recent mode '{recent_mode}'"
            raise ValueError(msg)
        self._store = store
        self._gate = gate
        self._publisher = publisher
        self._signals = signals
        self._production_source = production_source
        self._recent_seconds = recent_minutes * 60
        self._recent_mode = recent_mode
        self._averages = {
            flow: RunningAverage(self._recent_seconds) for flow in FLOWS
        }
        self._queue: asyncio.Queue[MeterFrame] = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self._discarded: int = 0

    @property
    def discarded_count(self) -> int:
        """Datagrams discarded before discovery finished."""
        return self._discarded

    @property
    def store(self) -> MeasurementStore:
        return self._store

    def latest_production_w(self) -> float | None:
        """Production of the most recent fused measurement."""
        latest = self._store.latest()
        return latest.production_w if latest is not None else None

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def submit(self, frame: MeterFrame) -> None:
        """Enqueue a decoded datagram (called from the listener)."""
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "Fusion queue full, dropping datagram at %.3f", frame.timestamp
            )

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Consume queued datagrams until shutdown."""
        logger.info("Fusion loop started")
        while not shutdown_event.is_set():
            frame: MeterFrame | None = None
            with contextlib.suppress(TimeoutError):
                frame = await asyncio.wait_for(
                    self._queue.get(), timeout=_QUEUE_POLL_S
                )
            if frame is None:
                continue
            try:
                self.process(frame)
            except Exception:
                logger.error("Fusion step error", exc_info=True)
        logger.info("Fusion loop stopped")

    # ------------------------------------------------------------------
    # Fusion step
    # ------------------------------------------------------------------

    def process(self, frame: MeterFrame) -> Measurement | None:
        """Run one fusion step for *frame*.

        Returns:
            The stored measurement, or None when the frame was discarded.
        """
        if not self._gate.is_ready:
            self._discarded += 1
            return None

        latest = self._store.latest()
        if latest is not None and latest.timestamp == frame.timestamp:
            logger.debug("Duplicate datagram at %.3f, ignoring", frame.timestamp)
            return None

        production = self._production_source() or 0.0
        measurement = Measurement.from_net(
            timestamp=frame.timestamp,
            net_w=frame.net_watts or 0.0,
            production_w=production,
        )
        self._store.push(measurement)
        self._signals.evaluate(self._store)

        values: dict[str, Value] = {}
        values.update(_flow_values("live", _flows_of(measurement)))
        values["live.self_sufficiency_pct"] = measurement_self_sufficiency(measurement)
        recent = self._recent_flows(measurement)
        values.update(_flow_values("recent", recent))
        values["recent.self_sufficiency_pct"] = self_sufficiency(
            production=recent["production"],
            grid_import=recent["import"],
            grid_export=recent["export"],
            consumption=recent["consumption"],
        )
        values.update(self._signals.metric_values())
        self._publisher.update_many(values)
        return measurement

    def publish_unavailable(self) -> None:
        """Mark import/export as unavailable after a listener failure."""
        if not self._gate.is_ready:
            return
        self._publisher.update_many(UNAVAILABLE_VALUES)

    def _recent_flows(self, measurement: Measurement) -> dict[str, float]:
        if self._recent_mode == RECENT_EXPONENTIAL:
            return {
                flow: self._averages[flow].add(value)
                for flow, value in _flows_of(measurement).items()
            }
        return {
            flow: self._store.windowed_average(f"{flow}_w", self._recent_seconds)
            for flow in FLOWS
        }


def _flows_of(measurement: Measurement) -> dict[str, float]:
    return {
        "production": measurement.production_w,
        "import": measurement.import_w,
        "export": measurement.export_w,
        "consumption": measurement.consumption_w,
    }


def _flow_values(group: str, flows: dict[str, float]) -> dict[str, Value]:
    values: dict[str, Value] = {}
    for flow, watts in flows.items():
        values[f"{group}.{flow}_w"] = watts
        values[f"{group}.{flow}_active"] = watts > 0
    return values
