"""
Published metric definitions -- single source of truth.

Every value the daemon publishes to the smart-home bridge is declared here
with its kind, unit, bounds and resolution.  The table is static apart from
the user-configured surplus signals, whose entries are generated from the
configuration once at startup by :func:`metric_table`.

Metric IDs are dotted paths grouped by purpose:

- ``live.*``: the latest fused measurement.
- ``recent.*``: averages over the last few minutes.
- ``today.*``: energy since local midnight.
- ``inverter.*``: inverter status and electrical readings.
- ``signal.*``: condition signals (on/off plus a reason string).
- ``accessory.*``: identity strings shown by the bridge.

CHANGELOG:
- 2026-10-15: Add surplus signal metrics generated from configuration
- 2026-10-13: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

MAX_VOLTS: float = 250.0
"""230 V nominal, 250 V safety threshold."""

MAX_AMPERES: float = 40.0

MAX_WATTS: float = MAX_VOLTS * MAX_AMPERES
"""Largest real power the grid connection can carry."""

MAX_KWH: float = 65535.0


@dataclass(frozen=True, slots=True)
class MetricDef:
    """Definition of a single published value.

    Attributes:
        metric_id: Unique dotted identifier.
        kind: ``"float"``, ``"bool"`` or ``"str"``.
        unit: Engineering unit (empty for bool/str).
        min_value: Lower bound for floats; values below are clamped.
        max_value: Upper bound for floats; values above are clamped.
        step: Resolution for floats; values are rounded to a multiple.
        description: Free-text description.
    """

    metric_id: str
    kind: str
    unit: str = ""
    min_value: float | None = None
    max_value: float | None = None
    step: float | None = None
    description: str = ""


def _watts(metric_id: str, description: str) -> MetricDef:
    return MetricDef(metric_id, "float", "W", 0.0, MAX_WATTS, 0.1, description)


def _kwh(metric_id: str, description: str) -> MetricDef:
    return MetricDef(metric_id, "float", "kWh", 0.0, MAX_KWH, 0.001, description)


def _flag(metric_id: str, description: str) -> MetricDef:
    return MetricDef(metric_id, "bool", description=description)


def _text(metric_id: str, description: str) -> MetricDef:
    return MetricDef(metric_id, "str", description=description)


def _percent(metric_id: str, description: str) -> MetricDef:
    return MetricDef(metric_id, "float", "%", -100.0, 1000.0, 0.01, description)


FLOWS: tuple[str, ...] = ("production", "import", "export", "consumption")
"""The four power flows published for live and recent groups."""


def _flow_group(group: str, label: str) -> list[MetricDef]:
    defs: list[MetricDef] = []
    for flow in FLOWS:
        defs.append(_watts(f"{group}.{flow}_w", f"{label} {flow} power"))
        defs.append(_flag(f"{group}.{flow}_active", f"{label} {flow} above 0 W"))
    defs.append(_percent(f"{group}.self_sufficiency_pct", f"{label} self-sufficiency"))
    return defs


def _signal(key: str, label: str) -> list[MetricDef]:
    return [
        _flag(f"signal.{key}.active", f"{label} signal on/off"),
        _text(f"signal.{key}.reason", f"{label} signal reason"),
    ]


_BASE_METRICS: list[MetricDef] = [
    *_flow_group("live", "Live"),
    *_flow_group("recent", "Recent"),
    _kwh("today.production_kwh", "Energy produced today"),
    _kwh("today.import_kwh", "Energy imported from the grid today"),
    _kwh("today.export_kwh", "Energy exported to the grid today"),
    _kwh("today.consumption_kwh", "Energy consumed today"),
    _percent("today.self_sufficiency_pct", "Self-sufficiency today"),
    _flag("inverter.active", "Inverter operating normally or with warning"),
    _flag("inverter.fault", "Inverter reports fault or warning"),
    _watts("inverter.production_w", "Inverter AC production"),
    MetricDef(
        "inverter.amperes", "float", "A", 0.0, MAX_AMPERES, 0.01, "Grid current L1"
    ),
    MetricDef("inverter.volts", "float", "V", 0.0, MAX_VOLTS, 0.1, "Grid voltage L1"),
    *_signal("off_grid", "Off-grid"),
    *_signal("no_sun", "No sun"),
    *_signal("high_import", "High import"),
    _watts("signal.high_import.average_w", "15-minute average grid import"),
    _text("accessory.manufacturer", "Manufacturer"),
    _text("accessory.model", "Model"),
    _text("accessory.serial_number", "Inverter and meter serial numbers"),
    _text("accessory.firmware_revision", "Inverter and meter firmware revisions"),
]

METRICS: dict[str, MetricDef] = {m.metric_id: m for m in _BASE_METRICS}
"""Metrics that exist regardless of configuration."""


def slugify(label: str) -> str:
    """Turn a user label into a metric ID segment ("Boiler 2kW" -> "boiler_2kw")."""
    slug = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
    return slug or "signal"


def surplus_key(label: str) -> str:
    """Signal key of a surplus signal."""
    return f"surplus_{slugify(label)}"


def metric_table(surplus_labels: Iterable[str] = ()) -> dict[str, MetricDef]:
    """Full metric table including the configured surplus signals.

    Raises:
        ValueError: If two surplus labels map to the same metric ID.
    """
    table = dict(METRICS)
    for label in surplus_labels:
        for metric in _signal(surplus_key(label), f"Surplus '{label}'"):
            if metric.metric_id in table:
                msg = f"Duplicate surplus signal label '{label}'"
                raise ValueError(msg)
            table[metric.metric_id] = metric
    return table
