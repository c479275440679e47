"""
Discovery gate: publishing starts only after both devices are identified.

Two states, ``discovering`` -> ``ready``.  The transition happens exactly
once, on the first :meth:`DiscoveryGate.check` that finds both the inverter
and the energy meter identity present.  It runs the ``on_ready`` callback
(which publishes the accessory information) and then latches; fusion steps
consult :attr:`DiscoveryGate.is_ready` and discard measurements that arrive
earlier.

Identities are set once; later attempts to replace them are ignored.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from homeflow.src.models import DeviceIdentity

logger = logging.getLogger(__name__)

MANUFACTURER: str = "SMA Solar Technology AG"
MODEL: str = "Sunny Boy & SMA Home Manager 2.0"

DISCOVERING: str = "discovering"
READY: str = "ready"

ReadyCallback = Callable[[DeviceIdentity, DeviceIdentity], None]


class DiscoveryGate:
    """One-shot latch released once both device identities are known.

    Args:
        on_ready: Called once with ``(inverter, meter)`` identities on the
            transition to ``ready``.
    """

    def __init__(self, on_ready: ReadyCallback | None = None) -> None:
        self._on_ready = on_ready
        self._inverter: DeviceIdentity | None = None
        self._meter: DeviceIdentity | None = None
        self._state = DISCOVERING

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == READY

    @property
    def inverter(self) -> DeviceIdentity | None:
        return self._inverter

    @property
    def meter(self) -> DeviceIdentity | None:
        return self._meter

    def set_inverter(self, identity: DeviceIdentity) -> None:
        if self._inverter is not None:
            logger.debug("Inverter identity already known, ignoring %s", identity)
            return
        self._inverter = identity
        logger.info(
            "Discovered SMA inverter: serial=%d firmware=%s",
            identity.serial_number,
            identity.firmware_revision,
        )

    def set_meter(self, identity: DeviceIdentity) -> None:
        if self._meter is not None:
            logger.debug("Energy meter identity already known, ignoring %s", identity)
            return
        self._meter = identity
        logger.info(
            "Discovered SMA energy meter: serial=%d firmware=%s model=%s",
            identity.serial_number,
            identity.firmware_revision,
            identity.model,
        )

    def check(self) -> bool:
        """Run one discovery cycle.

        Returns:
            True only on the single call that performs the transition.
        """
        if self._state == READY:
            return False

        if self._inverter is None or self._meter is None:
            logger.info(
                "Discovered SMA inverter: %s",
                "yes" if self._inverter is not None else "no",
            )
            logger.info(
                "Discovered SMA energy meter: %s",
                "yes" if self._meter is not None else "no",
            )
            return False

        if self._on_ready is not None:
            self._on_ready(self._inverter, self._meter)
        self._state = READY
        logger.info("Both devices discovered, publishing enabled")
        return True


def accessory_values(inverter: DeviceIdentity, meter: DeviceIdentity) -> dict[str, str]:
    """Accessory information shared by every published group."""
    return {
        "accessory.manufacturer": MANUFACTURER,
        "accessory.model": MODEL,
        "accessory.serial_number": f"{inverter.serial_number} & {meter.serial_number}",
        "accessory.firmware_revision": (
            f"{inverter.firmware_revision} & {meter.firmware_revision}"
        ),
    }
