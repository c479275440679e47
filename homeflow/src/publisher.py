"""
Published-value bookkeeping and HTTP push to the smart-home bridge.

:class:`ValuePublisher` is what the rest of the daemon talks to: a
non-blocking ``update(metric_id, value)`` that normalises the value per its
:class:`~homeflow.src.metrics.MetricDef` and records it only when it
changed.  Changed values accumulate in a pending set.

:class:`BridgeUploader` drains that pending set and POSTs it as JSON to the
bridge endpoint with Bearer token authentication.  On failure the values
are handed back to the publisher (newer updates win) and the internal
backoff delay doubles, capped at ``max_backoff_s``.

Operations:
- ValuePublisher.update / update_many: record changed values.
- ValuePublisher.drain / restore: hand pending values to the uploader.
- BridgeUploader.push(publisher): POST pending values, restore on failure.

CHANGELOG:
- 2026-10-15: Restore undelivered values on failed push
- 2026-10-13: Initial creation (STORY-011)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping

import httpx

from homeflow.src.metrics import MetricDef

logger = logging.getLogger(__name__)

Value = float | bool | str

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 300.0
_REQUEST_TIMEOUT_S = 10.0


class ValuePublisher:
    """Latest value per metric plus the set of values not yet delivered.

    Args:
        metrics: Metric table, see :func:`~homeflow.src.metrics.metric_table`.
    """

    def __init__(self, metrics: Mapping[str, MetricDef]) -> None:
        self._metrics = dict(metrics)
        self._values: dict[str, Value] = {}
        self._pending: dict[str, Value] = {}

    @property
    def metrics(self) -> dict[str, MetricDef]:
        return self._metrics

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get(self, metric_id: str) -> Value | None:
        return self._values.get(metric_id)

    def snapshot(self) -> dict[str, Value]:
        """Copy of the latest value of every metric published so far."""
        return dict(self._values)

    def update(self, metric_id: str, value: Value) -> bool:
        """Record a value; returns True when it differs from the last one.

        Raises:
            KeyError: If *metric_id* is not in the metric table.
        """
        metric = self._metrics[metric_id]
        normalized = _normalize(metric, value)
        if metric_id in self._values and self._values[metric_id] == normalized:
            return False
        self._values[metric_id] = normalized
        self._pending[metric_id] = normalized
        return True

    def update_many(self, values: Mapping[str, Value]) -> int:
        """Record several values; returns how many changed."""
        return sum(self.update(metric_id, value) for metric_id, value in values.items())

    def drain(self) -> dict[str, Value]:
        """Take all pending values, leaving none pending."""
        pending, self._pending = self._pending, {}
        return pending

    def restore(self, values: Mapping[str, Value]) -> None:
        """Put undelivered values back unless a newer value is already pending."""
        for metric_id, value in values.items():
            self._pending.setdefault(metric_id, value)


def _normalize(metric: MetricDef, value: Value) -> Value:
    """Coerce *value* to the metric's kind, bounds and resolution."""
    if metric.kind == "bool":
        return bool(value)
    if metric.kind == "str":
        return str(value)

    number = float(value)
    if math.isnan(number):
        msg = f"Metric '{metric.metric_id}': NaN is not publishable"
        raise ValueError(msg)
    if metric.min_value is not None and number < metric.min_value:
        logger.debug(
            "Metric '%s': %.4g clamped to minimum %.4g",
            metric.metric_id,
            number,
            metric.min_value,
        )
        number = metric.min_value
    if metric.max_value is not None and number > metric.max_value:
        logger.debug(
            "Metric '%s': %.4g clamped to maximum %.4g",
            metric.metric_id,
            number,
            metric.max_value,
        )
        number = metric.max_value
    if metric.step:
        decimals = max(0, -math.floor(math.log10(metric.step)))
        number = round(round(number / metric.step) * metric.step, decimals)
    return number


class BridgeUploader:
    """Pushes changed values to the smart-home bridge over HTTP.

    POSTs ``{"values": {metric_id: value, ...}}`` to ``{bridge_url}/values``.
    Any 2xx response counts as delivered.

    Args:
        bridge_url: Base URL of the bridge (``http://`` or ``https://``).
        bridge_token: Bearer token; omitted from requests when empty.
        max_backoff_s: Maximum backoff delay in seconds (default 300).

    Raises:
        ValueError: If *bridge_url* is not an http(s) URL.
    """

    def __init__(
        self,
        bridge_url: str,
        bridge_token: str = "",
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
    ) -> None:
        if not bridge_url.lower().startswith(("http://", "https://")):
            raise ValueError(f"Bridge URL must be http(s) (got: '{bridge_url}').")
        self._bridge_url = bridge_url.rstrip("/")
        self._bridge_token = bridge_token
        self._max_backoff_s = max_backoff_s
        self._current_backoff = _INITIAL_BACKOFF_S
        self._consecutive_failures = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_backoff(self) -> float:
        """Current backoff delay in seconds.

        Starts at 1s, doubles on each consecutive failure, capped at
        ``max_backoff_s``. Resets to 1s on a successful push.
        """
        return self._current_backoff

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def push(self, publisher: ValuePublisher) -> bool:
        """POST all pending values and restore them on failure.

        Returns:
            ``True`` if values were delivered.  ``False`` if nothing was
            pending, the request failed, or the bridge returned non-2xx.
        """
        values = publisher.drain()
        if not values:
            logger.debug("No pending values, skipping push.")
            return False

        headers = {}
        if self._bridge_token:
            headers["Authorization"] = f"Bearer {self._bridge_token}"

        try:
            async with httpx.AsyncClient(timeout=_REQUEST_TIMEOUT_S) as client:
                response = await client.post(
                    f"{self._bridge_url}/values",
                    json={"values": values},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.warning("Push to bridge failed (network error): %s", exc)
            publisher.restore(values)
            self._increase_backoff()
            return False

        if response.is_success:
            logger.debug("Pushed %d values to bridge.", len(values))
            self._reset_backoff()
            return True

        logger.warning(
            "Push to bridge failed (HTTP %d), will retry after %.1fs backoff.",
            response.status_code,
            self._current_backoff,
        )
        publisher.restore(values)
        self._increase_backoff()
        return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _increase_backoff(self) -> None:
        """Double the backoff delay, capped at max_backoff_s."""
        self._consecutive_failures += 1
        self._current_backoff = min(
            self._current_backoff * 2,
            self._max_backoff_s,
        )

    def _reset_backoff(self) -> None:
        """Reset backoff to the initial value (1s)."""
        self._consecutive_failures = 0
        self._current_backoff = _INITIAL_BACKOFF_S
