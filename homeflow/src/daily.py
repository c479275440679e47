"""
Daily grid-energy accounting from cumulative inverter counters.

The inverter exposes lifetime grid import/export counters but no daily
ones.  The tracker keeps a single checkpoint: the counter values when
tracking of the current local day began, and the latest values seen that
day.  Today's import/export is the difference.

The checkpoint is persisted through a key-value store on every day
rollover, so a restart later in the day resumes from the stored start
values instead of starting over at zero.

Nothing here raises to the caller: a storage failure on load degrades to an
uninitialised checkpoint, and a failed write is logged and retried on the
next rollover.

CHANGELOG:
- 2026-10-19: DST-aware seconds since local midnight
- 2026-10-15: Track seconds missed before tracking started
- 2026-10-14: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, time
from typing import Any, Protocol

from pydantic import ValidationError

from homeflow.src.models import DailyEnergyCheckpoint, EnergyTotals
from homeflow.src.stats import self_sufficiency

logger = logging.getLogger(__name__)

CHECKPOINT_KEY: str = "daily_energy_checkpoint"
"""Storage key of the persisted checkpoint."""


class RecordStore(Protocol):
    """Durable storage used by the tracker (see KeyValueStore)."""

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, record: Mapping[str, Any]) -> None: ...


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _seconds_since_midnight(now: datetime) -> int:
    """Elapsed seconds since the start of *now*'s local day.

    Zones with DST rules resolve their own offset at midnight.  A fixed
    offset equal to the system one (as returned by ``astimezone()``) is
    re-resolved against the system zone, so days with a DST change are
    23 or 25 hours long.
    """
    midnight = datetime.combine(now.date(), time(), tzinfo=now.tzinfo)
    if now.tzinfo is not None and now.tzinfo == now.astimezone().tzinfo:
        midnight = datetime.combine(now.date(), time()).astimezone()
    elapsed = now.astimezone(UTC) - midnight.astimezone(UTC)
    return int(elapsed.total_seconds())


class DailyEnergyTracker:
    """Keeps "energy today" from monotonically increasing grid counters.

    Args:
        store: Durable record storage.
        clock: Returns the current local time; injectable for tests.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._store = store
        self._clock = clock
        self._checkpoint = DailyEnergyCheckpoint()

    @property
    def checkpoint(self) -> DailyEnergyCheckpoint:
        return self._checkpoint

    @property
    def is_initialized(self) -> bool:
        return self._checkpoint.day != -1

    @property
    def today_import_kwh(self) -> float:
        """Grid import since tracking began today."""
        if not self.is_initialized:
            return 0.0
        cp = self._checkpoint
        return max(cp.now.total_import_kwh - cp.start.total_import_kwh, 0.0)

    @property
    def today_export_kwh(self) -> float:
        """Grid export since tracking began today."""
        if not self.is_initialized:
            return 0.0
        cp = self._checkpoint
        return max(cp.now.total_export_kwh - cp.start.total_export_kwh, 0.0)

    def today_consumption_kwh(self, production_kwh: float) -> float:
        """Consumption today = import + production - export."""
        return self.today_import_kwh + production_kwh - self.today_export_kwh

    async def load(self) -> DailyEnergyCheckpoint:
        """Load the checkpoint from storage.

        Missing or unreadable records leave the tracker uninitialised
        (day = -1); the next :meth:`update` then starts a fresh day.
        """
        try:
            record = await self._store.get(CHECKPOINT_KEY)
        except Exception:
            logger.warning(
                "Failed to read daily energy checkpoint, starting uninitialized",
                exc_info=True,
            )
            record = None

        if record is not None:
            try:
                self._checkpoint = DailyEnergyCheckpoint.model_validate(record)
            except ValidationError:
                logger.warning(
                    "Stored daily energy checkpoint is invalid, starting uninitialized",
                    exc_info=True,
                )
                self._checkpoint = DailyEnergyCheckpoint()

        logger.info(
            "Daily energy checkpoint loaded: day=%d, missed_seconds=%d",
            self._checkpoint.day,
            self._checkpoint.missed_seconds,
        )
        return self._checkpoint

    async def update(self, totals: EnergyTotals) -> DailyEnergyCheckpoint:
        """Fold the latest cumulative counters into the checkpoint.

        On a new local day the checkpoint is reset (start = now = *totals*)
        and persisted before returning.  On the same day only ``now`` moves.
        """
        now = self._clock()
        today = now.date().toordinal()

        if today != self._checkpoint.day:
            self._checkpoint = DailyEnergyCheckpoint(
                day=today,
                missed_seconds=_seconds_since_midnight(now),
                start=totals,
                now=totals,
            )
            logger.info(
                "New day %s: daily energy checkpoint reset (missed %ds)",
                now.date().isoformat(),
                self._checkpoint.missed_seconds,
            )
            await self._persist()
        else:
            self._checkpoint = self._checkpoint.model_copy(update={"now": totals})

        return self._checkpoint

    def today_values(self, production_kwh: float | None) -> dict[str, float]:
        """Published "today" metrics; production-derived ones need *production_kwh*."""
        values = {
            "today.import_kwh": self.today_import_kwh,
            "today.export_kwh": self.today_export_kwh,
        }
        if production_kwh is not None:
            consumption = self.today_consumption_kwh(production_kwh)
            values["today.production_kwh"] = production_kwh
            values["today.consumption_kwh"] = consumption
            values["today.self_sufficiency_pct"] = self_sufficiency(
                production=production_kwh,
                grid_import=self.today_import_kwh,
                grid_export=self.today_export_kwh,
                consumption=consumption,
            )
        return values

    async def _persist(self) -> None:
        try:
            await self._store.set(
                CHECKPOINT_KEY, self._checkpoint.model_dump(mode="json")
            )
        except Exception:
            logger.error("Failed to persist daily energy checkpoint", exc_info=True)
