"""
Pydantic models for fused power-flow telemetry.

Defines the device identities learned during discovery, the per-second
fused Measurement, the persisted daily-energy checkpoint, per-signal state
and the user-configured surplus signal definition.

All models that are shared between components are frozen: a Measurement is
created once per meter datagram and never mutated afterwards.

CHANGELOG:
- 2026-10-13: Add SurplusSignalConfig (STORY-009)
- 2026-10-12: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class DeviceIdentity(BaseModel):
    """Identity of one device, learned once during discovery.

    Attributes:
        serial_number: Device serial number (unsigned 32-bit).
        firmware_revision: Human-readable firmware version string.
        model: Device model code, when the device reports one.
    """

    model_config = ConfigDict(frozen=True)

    serial_number: int = Field(ge=0, le=0xFFFFFFFF)
    firmware_revision: str
    model: int | None = None


class Measurement(BaseModel):
    """One fused per-second measurement of household power flow.

    The net grid power reported by the energy meter is split into the two
    non-negative import/export fields, so at most one of them is non-zero.

    Attributes:
        timestamp: Energy meter clock in seconds (wraps after ~49.7 days).
        import_w: Power drawn from the grid in watts.
        export_w: Power fed into the grid in watts.
        production_w: Inverter production in watts.
        consumption_w: Household consumption, import + production - export.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: float
    import_w: float = Field(ge=0)
    export_w: float = Field(ge=0)
    production_w: float
    consumption_w: float

    @classmethod
    def from_net(
        cls,
        *,
        timestamp: float,
        net_w: float,
        production_w: float,
    ) -> Measurement:
        """Build a measurement from net grid power (positive = import)."""
        import_w = net_w if net_w > 0 else 0.0
        export_w = -net_w if net_w < 0 else 0.0
        return cls(
            timestamp=timestamp,
            import_w=import_w,
            export_w=export_w,
            production_w=production_w,
            consumption_w=import_w + production_w - export_w,
        )


class EnergyTotals(BaseModel):
    """Cumulative grid energy counters in kWh."""

    total_import_kwh: float = 0.0
    total_export_kwh: float = 0.0


class DailyEnergyCheckpoint(BaseModel):
    """Start-of-day and latest cumulative grid counters.

    ``day`` is the local calendar date as a proleptic ordinal; -1 means
    "never initialised", which is distinguishable from any real day.

    Attributes:
        day: Local date ordinal the checkpoint belongs to.
        missed_seconds: Seconds since local midnight when tracking began.
        start: Counter values at the start of tracking for ``day``.
        now: Latest counter values observed on ``day``.
    """

    day: int = -1
    missed_seconds: int = 0
    start: EnergyTotals = Field(default_factory=EnergyTotals)
    now: EnergyTotals = Field(default_factory=EnergyTotals)


class SignalState(BaseModel):
    """Current on/off state of one condition signal with its reason."""

    active: bool = False
    reason: str = ""


class SurplusSignalConfig(BaseModel):
    """A user-defined surplus signal.

    Attributes:
        label: Display name, also used to derive the metric ID.
        minutes: Trailing window length the export must be sustained for.
        watts: Export power this signal's load would consume.
    """

    label: str = Field(min_length=1)
    minutes: int = Field(gt=0)
    watts: float = Field(gt=0)
