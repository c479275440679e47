"""
Small numeric helpers shared by the fusion step and the signal engine.

- RunningAverage: incremental mean with a capped sample count.
- percentile_nearest_rank: nearest-rank percentile of a sample list.
- self_sufficiency: share of consumption covered by local production.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Protocol


class PowerFlow(Protocol):
    """Anything carrying the four power-flow fields (e.g. Measurement)."""

    import_w: float
    export_w: float
    production_w: float
    consumption_w: float


SELF_SUFFICIENCY_NO_PRODUCTION: float = -100.0
SELF_SUFFICIENCY_WITH_IMPORT_MAX: float = 99.0
SELF_SUFFICIENCY_MAX: float = 1000.0


class RunningAverage:
    """Exponential-style running mean.

    On the Nth sample the value moves by ``(sample - value) / N``.  Once N
    reaches *cap* it stops incrementing, so older samples keep decaying and
    the cap acts as a floor on responsiveness rather than a hard window.

    Args:
        cap: Maximum sample count (must be >= 1).
    """

    def __init__(self, cap: int) -> None:
        if cap < 1:
            raise ValueError("RunningAverage cap must be >= 1")
        self._cap = cap
        self._value = 0.0
        self._count = 0

    @property
    def value(self) -> float:
        return self._value

    @property
    def sample_count(self) -> int:
        return self._count

    @property
    def cap(self) -> int:
        return self._cap

    def add(self, sample: float) -> float:
        """Fold one sample into the average and return the new value."""
        if self._count < self._cap:
            self._count += 1
        self._value += (sample - self._value) / self._count
        return self._value

    def reset(self) -> None:
        self._value = 0.0
        self._count = 0


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def percentile_nearest_rank(values: Sequence[float], fraction: float) -> float:
    """Nearest-rank percentile.

    Samples are sorted ascending and the element at
    ``ceil(fraction * count) - 1`` is returned.

    Raises:
        ValueError: If *values* is empty or *fraction* is outside (0, 1].
    """
    if not values:
        raise ValueError("percentile of an empty sequence")
    if not 0 < fraction <= 1:
        raise ValueError("fraction must be in (0, 1]")
    ordered = sorted(values)
    index = math.ceil(fraction * len(ordered)) - 1
    return ordered[max(index, 0)]


def self_sufficiency(
    *,
    production: float,
    grid_import: float,
    grid_export: float,
    consumption: float,
) -> float:
    """Percentage of consumption covered by local production.

    Works for power (W) and energy (kWh) alike.

    - No production: -100.
    - Grid import present: (production - export) / consumption, capped at 99
      because the grid was still needed.
    - Otherwise: production / consumption, capped at 1000 (10x consumption).
    """
    if production == 0:
        return SELF_SUFFICIENCY_NO_PRODUCTION
    if consumption <= 0:
        return SELF_SUFFICIENCY_MAX
    if grid_import > 0:
        ratio = (production - grid_export) / consumption * 100
        return min(ratio, SELF_SUFFICIENCY_WITH_IMPORT_MAX)
    ratio = production / consumption * 100
    return min(ratio, SELF_SUFFICIENCY_MAX)


def measurement_self_sufficiency(flow: PowerFlow) -> float:
    """:func:`self_sufficiency` of one measurement."""
    return self_sufficiency(
        production=flow.production_w,
        grid_import=flow.import_w,
        grid_export=flow.export_w,
        consumption=flow.consumption_w,
    )
