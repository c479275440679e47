"""
Health file writer for the homeflow daemon.

Writes a JSON health file at a configurable path with these fields:
- last_datagram_ts: ISO timestamp of the most recent energy meter datagram.
- last_inverter_poll_ts: ISO timestamp of the most recent successful
  inverter data poll.
- ready: Whether discovery has finished and values are being published.
- measurement_count: Measurements fused since startup.

The file is rewritten on every state change, providing a liveness signal
that a container HEALTHCHECK or an external monitor can inspect.

CHANGELOG:
- 2026-10-16: Track meter datagrams and discovery state (STORY-011)
- 2026-10-12: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes daemon health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_datagram_ts: str | None = None
        self._last_inverter_poll_ts: str | None = None
        self._ready: bool = False
        self._measurement_count: int = 0

    def record_inverter_poll(self) -> None:
        """Record a successful inverter data poll and write health file."""
        self._last_inverter_poll_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def update_fusion(
        self,
        *,
        ready: bool,
        measurement_count: int,
        last_datagram_at: datetime | None,
    ) -> None:
        """Update discovery/fusion progress and write health file.

        Args:
            ready: Discovery gate state.
            measurement_count: Measurements pushed into the store so far.
            last_datagram_at: Arrival time of the latest valid datagram.
        """
        self._ready = ready
        self._measurement_count = measurement_count
        if last_datagram_at is not None:
            self._last_datagram_ts = last_datagram_at.isoformat()
        self._write()

    def _write(self) -> None:
        data = {
            "last_datagram_ts": self._last_datagram_ts,
            "last_inverter_poll_ts": self._last_inverter_poll_ts,
            "ready": self._ready,
            "measurement_count": self._measurement_count,
        }
        self.path.write_text(json.dumps(data))
