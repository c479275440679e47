"""
Homeflow daemon main loop: SMA inverter + energy meter power-flow fusion.

Runs five concurrent asyncio tasks:
1. **Discovery loop**: reads the inverter serial/firmware and checks the
   discovery gate until both devices are identified, then exits.
2. **Inverter loop**: reads the inverter operating registers, folds the grid
   counters into the daily energy checkpoint and publishes inverter and
   "today" values.
3. **Meter listener**: receives Speedwire datagrams and queues them.
4. **Fusion loop**: one fusion step per queued datagram (see fusion.py).
5. **Publish loop**: pushes changed values to the smart-home bridge.

Every loop is resilient: an exception in one iteration is logged and does
not crash the loop or affect the others.  SIGTERM/SIGINT set a shared
asyncio.Event; loops finish their current iteration and a final push is
attempted before exit.

CHANGELOG:
- 2026-10-19: Publish cached inverter readings when discovery completes
- 2026-10-16: Publish loop honours bridge backoff
- 2026-10-14: Discovery gate wiring (STORY-006)
- 2026-10-12: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from homeflow.src.discovery import accessory_values
from homeflow.src.inverter import inverter_values
from homeflow.src.models import EnergyTotals

if TYPE_CHECKING:
    from homeflow.src.config import HomeflowSettings
    from homeflow.src.daily import DailyEnergyTracker
    from homeflow.src.discovery import DiscoveryGate
    from homeflow.src.fusion import FusionEngine
    from homeflow.src.health import HealthWriter
    from homeflow.src.inverter import InverterClient, InverterReadings
    from homeflow.src.meter import MeterListener
    from homeflow.src.publisher import BridgeUploader, ValuePublisher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger (stderr)."""

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: HomeflowSettings) -> None:
    """Log a config summary at startup; the bridge token is fingerprinted."""
    logger.info(
        "Homeflow daemon starting with config: "
        "inverter=%s:%s unit_id=%s, inverter_poll_interval_ms=%s, "
        "discovery_interval_ms=%s, meter=%s:%s via %s, "
        "recent_minutes=%s (%s), surplus_signals=%s, "
        "measurement_capacity=%s, state_path=%s, health_path=%s, "
        "bridge_url=%s, bridge_token_masked=%s",
        settings.inverter_host,
        settings.inverter_port,
        settings.inverter_unit_id,
        settings.inverter_poll_interval_ms,
        settings.discovery_interval_ms,
        settings.meter_group,
        settings.meter_port,
        settings.meter_interface,
        settings.recent_minutes,
        settings.recent_mode,
        [s.label for s in settings.surplus_signals],
        settings.measurement_capacity,
        settings.state_path,
        settings.health_path,
        settings.bridge_url,
        _masked_token(settings.bridge_token),
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


def _record_fusion_health(
    health: HealthWriter | None,
    *,
    gate: DiscoveryGate,
    fusion: FusionEngine,
    listener: MeterListener | None,
) -> None:
    if health is None:
        return
    try:
        health.update_fusion(
            ready=gate.is_ready,
            measurement_count=fusion.store.push_count,
            last_datagram_at=listener.last_datagram_at if listener else None,
        )
    except Exception:
        logger.warning("Failed to write health file", exc_info=True)


def _publish_inverter(
    readings: InverterReadings,
    *,
    tracker: DailyEnergyTracker,
    publisher: ValuePublisher,
) -> None:
    publisher.update_many(inverter_values(readings))
    if tracker.is_initialized:
        publisher.update_many(tracker.today_values(readings.yield_today_kwh))


async def _discovery_once(
    *,
    inverter: InverterClient,
    gate: DiscoveryGate,
    fusion: FusionEngine,
    listener: MeterListener | None = None,
    health: HealthWriter | None = None,
    tracker: DailyEnergyTracker | None = None,
    publisher: ValuePublisher | None = None,
) -> bool:
    """Execute a single discovery cycle.

    On the cycle that opens the gate, the readings from data polls already
    made are published immediately.

    Returns:
        True once the gate is ready.
    """
    try:
        await inverter.poll_metadata()
        if gate.check() and tracker is not None and publisher is not None:
            _publish_inverter(inverter.readings, tracker=tracker, publisher=publisher)
    except Exception:
        logger.error("Discovery cycle error", exc_info=True)
    _record_fusion_health(health, gate=gate, fusion=fusion, listener=listener)
    return gate.is_ready


async def _inverter_once(
    *,
    inverter: InverterClient,
    tracker: DailyEnergyTracker,
    gate: DiscoveryGate,
    fusion: FusionEngine,
    publisher: ValuePublisher,
    listener: MeterListener | None = None,
    health: HealthWriter | None = None,
) -> None:
    """Execute a single inverter data poll.

    The grid counters always feed the daily tracker; published values are
    only recorded once discovery is complete.
    """
    try:
        readings = await inverter.poll_data(fusion.latest_production_w())
        if readings is None:
            logger.warning("Inverter poll returned None, skipping update")
            return

        if (
            readings.total_import_kwh is not None
            and readings.total_export_kwh is not None
        ):
            await tracker.update(
                EnergyTotals(
                    total_import_kwh=readings.total_import_kwh,
                    total_export_kwh=readings.total_export_kwh,
                )
            )

        if gate.is_ready:
            _publish_inverter(readings, tracker=tracker, publisher=publisher)

        if health is not None:
            health.record_inverter_poll()
    except Exception:
        logger.error("Inverter cycle error", exc_info=True)
    finally:
        _record_fusion_health(health, gate=gate, fusion=fusion, listener=listener)


async def _publish_once(
    *,
    publisher: ValuePublisher,
    uploader: BridgeUploader | None,
) -> bool:
    """Execute a single publish cycle.

    Without a bridge the pending set is simply drained; the latest values
    stay available through :meth:`ValuePublisher.snapshot`.

    Returns:
        True if values were delivered.
    """
    if uploader is None:
        drained = publisher.drain()
        if drained:
            logger.debug("No bridge configured, %d values kept locally", len(drained))
        return False
    try:
        return await uploader.push(publisher)
    except Exception:
        logger.error("Publish cycle error", exc_info=True)
        return False


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _sleep_or_shutdown(shutdown_event: asyncio.Event, seconds: float) -> None:
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)


async def _discovery_loop(
    *,
    inverter: InverterClient,
    gate: DiscoveryGate,
    fusion: FusionEngine,
    listener: MeterListener | None,
    tracker: DailyEnergyTracker,
    publisher: ValuePublisher,
    interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Run discovery cycles until the gate is ready or shutdown."""
    logger.info("Discovery loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        ready = await _discovery_once(
            inverter=inverter,
            gate=gate,
            fusion=fusion,
            listener=listener,
            health=health,
            tracker=tracker,
            publisher=publisher,
        )
        if ready:
            break
        await _sleep_or_shutdown(shutdown_event, interval_s)
    logger.info("Discovery loop stopped")


async def _inverter_loop(
    *,
    inverter: InverterClient,
    tracker: DailyEnergyTracker,
    gate: DiscoveryGate,
    fusion: FusionEngine,
    publisher: ValuePublisher,
    listener: MeterListener | None,
    interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Run inverter data polls until shutdown."""
    logger.info("Inverter loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        await _inverter_once(
            inverter=inverter,
            tracker=tracker,
            gate=gate,
            fusion=fusion,
            publisher=publisher,
            listener=listener,
            health=health,
        )
        await _sleep_or_shutdown(shutdown_event, interval_s)
    logger.info("Inverter loop stopped")


async def _publish_loop(
    *,
    publisher: ValuePublisher,
    uploader: BridgeUploader | None,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run publish cycles until shutdown, backing off after bridge failures."""
    logger.info("Publish loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        await _publish_once(publisher=publisher, uploader=uploader)
        delay = interval_s
        if uploader is not None and uploader.consecutive_failures:
            delay = max(interval_s, uploader.current_backoff)
        await _sleep_or_shutdown(shutdown_event, delay)
    logger.info("Publish loop stopped")


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    inverter: InverterClient,
    listener: MeterListener,
    fusion: FusionEngine,
    gate: DiscoveryGate,
    tracker: DailyEnergyTracker,
    publisher: ValuePublisher,
    uploader: BridgeUploader | None,
    discovery_interval_s: float,
    inverter_poll_interval_s: float,
    publish_interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run all daemon tasks concurrently until shutdown.

    After every task has returned a final push is attempted and the Modbus
    connection is closed.
    """
    logger.info("Starting discovery, inverter, meter, fusion and publish tasks")

    await asyncio.gather(
        _discovery_loop(
            inverter=inverter,
            gate=gate,
            fusion=fusion,
            listener=listener,
            tracker=tracker,
            publisher=publisher,
            interval_s=discovery_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        _inverter_loop(
            inverter=inverter,
            tracker=tracker,
            gate=gate,
            fusion=fusion,
            publisher=publisher,
            listener=listener,
            interval_s=inverter_poll_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        ),
        listener.run(shutdown_event),
        fusion.run(shutdown_event),
        _publish_loop(
            publisher=publisher,
            uploader=uploader,
            interval_s=publish_interval_s,
            shutdown_event=shutdown_event,
        ),
    )

    logger.info("Attempting final push before exit")
    await _publish_once(publisher=publisher, uploader=uploader)
    inverter.close()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from homeflow.src.config import HomeflowSettings
    from homeflow.src.daily import DailyEnergyTracker
    from homeflow.src.discovery import DiscoveryGate
    from homeflow.src.fusion import FusionEngine
    from homeflow.src.health import HealthWriter
    from homeflow.src.inverter import InverterClient
    from homeflow.src.kvstore import KeyValueStore
    from homeflow.src.meter import MeterListener
    from homeflow.src.metrics import metric_table
    from homeflow.src.publisher import BridgeUploader, ValuePublisher
    from homeflow.src.signals import SignalEngine
    from homeflow.src.store import MeasurementStore

    settings = HomeflowSettings()
    logging.getLogger().setLevel(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    publisher = ValuePublisher(
        metric_table(s.label for s in settings.surplus_signals)
    )
    uploader = (
        BridgeUploader(settings.bridge_url, settings.bridge_token)
        if settings.bridge_url
        else None
    )

    gate = DiscoveryGate(
        on_ready=lambda inv, meter: publisher.update_many(
            accessory_values(inv, meter)
        )
    )
    inverter = InverterClient(
        host=settings.inverter_host,
        port=settings.inverter_port,
        unit_id=settings.inverter_unit_id,
        on_identity=gate.set_inverter,
    )
    signals = SignalEngine(
        off_grid=settings.signal_off_grid,
        no_sun=settings.signal_no_sun,
        high_import=settings.signal_high_import,
        surplus=settings.surplus_signals,
        base_load_variability_w=settings.base_load_variability_w,
    )
    fusion = FusionEngine(
        store=MeasurementStore(settings.measurement_capacity),
        gate=gate,
        publisher=publisher,
        signals=signals,
        production_source=lambda: inverter.production_w,
        recent_minutes=settings.recent_minutes,
        recent_mode=settings.recent_mode,
    )
    listener = MeterListener(
        on_reading=fusion.submit,
        gate=gate,
        on_unavailable=fusion.publish_unavailable,
        group=settings.meter_group,
        port=settings.meter_port,
        interface=settings.meter_interface,
        refresh_interval_s=settings.membership_refresh_s,
        restart_delay_s=settings.listener_restart_delay_s,
    )
    health = HealthWriter(settings.health_path)

    await inverter.connect()

    async with KeyValueStore(settings.state_path) as kv:
        tracker = DailyEnergyTracker(kv)
        await tracker.load()
        await run_loops(
            inverter=inverter,
            listener=listener,
            fusion=fusion,
            gate=gate,
            tracker=tracker,
            publisher=publisher,
            uploader=uploader,
            discovery_interval_s=settings.discovery_interval_ms / 1000,
            inverter_poll_interval_s=settings.inverter_poll_interval_ms / 1000,
            publish_interval_s=settings.publish_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        )


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the homeflow daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
