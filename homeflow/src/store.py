"""
Fixed-capacity ring buffer of fused per-second measurements.

The buffer owns the storage and the write cursor.  Writes land at a
monotonically advancing cursor modulo capacity, overwriting the oldest entry
once the buffer is full.  Because the physical order wraps, readers use
:meth:`MeasurementStore.chronological`, which stitches the slice after the
cursor to the slice up to and including it.

At one measurement per second, entry counts and seconds are used
interchangeably.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import itertools
from collections.abc import Iterator

from homeflow.src.models import Measurement
from homeflow.src.stats import mean

FIELDS: frozenset[str] = frozenset(
    {"import_w", "export_w", "production_w", "consumption_w"}
)
"""Measurement fields that can be aggregated."""


class MeasurementStore:
    """Circular buffer of :class:`Measurement` with windowed aggregates.

    Args:
        capacity: Number of measurements retained (fixed, >= 1).
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("MeasurementStore capacity must be >= 1")
        self._capacity = capacity
        self._buffer: list[Measurement] = []
        self._cursor: int = -1
        self._push_count: int = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def push_count(self) -> int:
        """Total number of measurements ever pushed."""
        return self._push_count

    def __len__(self) -> int:
        return len(self._buffer)

    def push(self, measurement: Measurement) -> None:
        """Store *measurement* at the next cursor position."""
        self._cursor = (self._cursor + 1) % self._capacity
        if len(self._buffer) < self._capacity:
            self._buffer.append(measurement)
        else:
            self._buffer[self._cursor] = measurement
        self._push_count += 1

    def latest(self) -> Measurement | None:
        """Most recently pushed measurement, if any."""
        if not self._buffer:
            return None
        return self._buffer[self._cursor]

    def chronological(self) -> Iterator[Measurement]:
        """Iterate oldest -> newest.

        A fresh iterator is built on every call.  While the buffer is still
        filling, physical order is already chronological.
        """
        if len(self._buffer) < self._capacity:
            return iter(self._buffer[:])
        split = self._cursor + 1
        return itertools.chain(self._buffer[split:], self._buffer[:split])

    def tail(self, field: str, count: int) -> list[float]:
        """Values of *field* for the newest *count* measurements, oldest first."""
        _check_field(field)
        if count <= 0:
            return []
        skip = max(len(self._buffer) - count, 0)
        return [
            getattr(m, field)
            for m in itertools.islice(self.chronological(), skip, None)
        ]

    def windowed_average(self, field: str, window_seconds: int) -> float:
        """Mean of *field* over the newest *window_seconds* entries.

        With fewer entries than requested, averages whatever exists
        (0.0 when empty).
        """
        return mean(self.tail(field, window_seconds))

    def seconds_since_last_positive(self, field: str) -> int:
        """Count entries from the newest backwards until *field* > 0.

        Returns 0 when the newest entry is positive, and the number of
        entries held when no positive value is present at all.
        """
        _check_field(field)
        seconds = 0
        for measurement in reversed(list(self.chronological())):
            if getattr(measurement, field) > 0:
                return seconds
            seconds += 1
        return seconds


def _check_field(field: str) -> None:
    if field not in FIELDS:
        msg = f"Unknown measurement field '{field}'"
        raise ValueError(msg)
