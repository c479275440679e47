"""
Async Modbus TCP client for the SMA Sunny Boy inverter.

Owns a single AsyncModbusTcpClient for the lifetime of the daemon and reads
the registers defined in registers.py:

- poll_metadata(): serial number and firmware version, until both are known.
- poll_data(): condition, production, daily yield, grid counters, and grid
  current/voltage while the panels are producing.

Designed to be robust:

- connect() never raises; a failed connect is retried by the next poll.
- Any read or transport error during a poll is logged and answered with a
  reconnect.  There is no inline retry or backoff; the next scheduled poll
  is the retry.
- NaN register values leave the previously known value untouched.

CHANGELOG:
- 2026-10-15: Read grid current/voltage only while producing
- 2026-10-14: Keep half-read identity across metadata polls
- 2026-10-12: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass

from pymodbus.client import AsyncModbusTcpClient

from homeflow.src.codec import (
    decode_enum,
    decode_firmware,
    decode_register,
    decode_serial,
)
from homeflow.src.models import DeviceIdentity
from homeflow.src.registers import (
    AC_POWER,
    CONDITION,
    DAILY_YIELD,
    FIRMWARE_VERSION,
    GRID_CURRENT,
    GRID_EXPORT_TOTAL,
    GRID_IMPORT_TOTAL,
    GRID_VOLTAGE,
    SERIAL_NUMBER,
    RegisterDef,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MODBUS_TIMEOUT_S: float = 10.0
"""Timeout per Modbus TCP request in seconds."""

DEFAULT_UNIT_ID: int = 3
"""SMA inverters answer on unit ID 3."""

CONDITION_FAULT: int = 35
CONDITION_OFF: int = 303
CONDITION_OK: int = 307
CONDITION_WARNING: int = 455


class InverterReadError(Exception):
    """A register read returned a Modbus error response."""


# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InverterStatus:
    """Inverter condition mapped to active/fault flags."""

    condition: int
    active: bool
    fault: bool


@dataclass(frozen=True, slots=True)
class InverterReadings:
    """Latest known value of every operating register (None = never read)."""

    status: InverterStatus | None = None
    production_w: float | None = None
    yield_today_kwh: float | None = None
    total_import_kwh: float | None = None
    total_export_kwh: float | None = None
    amperes: float | None = None
    volts: float | None = None


def map_condition(condition: int) -> InverterStatus:
    """Map an SMA condition code to active/fault flags.

    35 = fault, 455 = warning (faulted but still active), 303 = off,
    307 = ok.  Unknown codes are logged and treated as inactive without
    fault.
    """
    if condition == CONDITION_FAULT:
        return InverterStatus(condition, active=False, fault=True)
    if condition == CONDITION_WARNING:
        return InverterStatus(condition, active=True, fault=True)
    if condition not in (CONDITION_OFF, CONDITION_OK):
        logger.warning("Unknown inverter condition %d", condition)
    return InverterStatus(condition, active=condition == CONDITION_OK, fault=False)


def inverter_values(readings: InverterReadings) -> dict[str, float | bool]:
    """Published inverter metrics for every value known so far."""
    values: dict[str, float | bool] = {}
    if readings.status is not None:
        values["inverter.active"] = readings.status.active
        values["inverter.fault"] = readings.status.fault
    if readings.production_w is not None:
        values["inverter.production_w"] = readings.production_w
    if readings.amperes is not None:
        values["inverter.amperes"] = readings.amperes
    if readings.volts is not None:
        values["inverter.volts"] = readings.volts
    return values


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class InverterClient:
    """Stateful Modbus TCP client for one SMA inverter.

    Args:
        host: Inverter IP address or hostname.
        port: Modbus TCP port (default 502).
        unit_id: Modbus unit ID (default 3).
        client: Pre-built client, for tests; one is created when omitted.
        on_identity: Called once when serial and firmware are both known.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 502,
        unit_id: int = DEFAULT_UNIT_ID,
        client: AsyncModbusTcpClient | None = None,
        on_identity: Callable[[DeviceIdentity], None] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._unit_id = unit_id
        self._client = client or AsyncModbusTcpClient(
            host, port=port, timeout=MODBUS_TIMEOUT_S
        )
        self._on_identity = on_identity
        self._serial_number: int | None = None
        self._firmware_revision: str | None = None
        self._identity: DeviceIdentity | None = None
        self._readings = InverterReadings()

    @property
    def identity(self) -> DeviceIdentity | None:
        return self._identity

    @property
    def readings(self) -> InverterReadings:
        return self._readings

    @property
    def production_w(self) -> float | None:
        """Latest known production; read by the fusion step."""
        return self._readings.production_w

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """(Re)establish the TCP connection.

        Never raises.  Returns True when connected.
        """
        logger.debug("Attempting connection to inverter %s:%d", self._host, self._port)
        self._client.close()
        try:
            ok = await self._client.connect()
        except Exception:
            logger.warning(
                "Connection attempt to inverter %s:%d failed",
                self._host,
                self._port,
                exc_info=True,
            )
            return False

        if not ok:
            logger.warning(
                "Connection attempt to inverter %s:%d failed (connect returned False)",
                self._host,
                self._port,
            )
            return False

        logger.info("Connected to inverter %s:%d", self._host, self._port)
        return True

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Polls
    # ------------------------------------------------------------------

    async def poll_metadata(self) -> DeviceIdentity | None:
        """Read serial number and firmware version until both are known.

        The two reads are independent; whichever succeeds is kept for the
        next call.  A no-op once the identity is known.

        Returns:
            The identity once known, otherwise None.
        """
        if self._identity is not None:
            return self._identity

        serial_result, firmware_result = await asyncio.gather(
            self._read(SERIAL_NUMBER),
            self._read(FIRMWARE_VERSION),
            return_exceptions=True,
        )

        failed = False
        for reg_def, result in (
            (SERIAL_NUMBER, serial_result),
            (FIRMWARE_VERSION, firmware_result),
        ):
            if isinstance(result, BaseException):
                logger.warning(
                    "Reading inverter %s failed: %s", reg_def.name, result
                )
                failed = True
        if not isinstance(serial_result, BaseException):
            self._serial_number = decode_serial(SERIAL_NUMBER, serial_result)
        if not isinstance(firmware_result, BaseException):
            self._firmware_revision = decode_firmware(FIRMWARE_VERSION, firmware_result)

        if failed:
            await self.connect()

        if self._serial_number is None or self._firmware_revision is None:
            return None

        self._identity = DeviceIdentity(
            serial_number=self._serial_number,
            firmware_revision=self._firmware_revision,
        )
        if self._on_identity is not None:
            self._on_identity(self._identity)
        return self._identity

    async def poll_data(
        self, latest_production_w: float | None = None
    ) -> InverterReadings | None:
        """Read the operating registers once.

        Args:
            latest_production_w: Production of the most recent fused
                measurement.  Grid current and voltage are only read while
                it is non-zero; idle readings are meaningless.

        Returns:
            Updated readings on success, or ``None`` after an error (in
            which case a reconnect has been attempted).
        """
        try:
            updates: dict[str, object] = {}

            condition = decode_enum(CONDITION, await self._read(CONDITION))
            if condition is not None:
                updates["status"] = map_condition(condition)

            for field_name, reg_def in (
                ("production_w", AC_POWER),
                ("yield_today_kwh", DAILY_YIELD),
                ("total_import_kwh", GRID_IMPORT_TOTAL),
                ("total_export_kwh", GRID_EXPORT_TOTAL),
            ):
                value = decode_register(reg_def, await self._read(reg_def))
                if value is not None:
                    updates[field_name] = value

            if latest_production_w:
                for field_name, reg_def in (
                    ("amperes", GRID_CURRENT),
                    ("volts", GRID_VOLTAGE),
                ):
                    value = decode_register(reg_def, await self._read(reg_def))
                    if value is not None:
                        updates[field_name] = value
        except Exception:
            logger.warning(
                "Inverter poll failed, attempting reconnect",
                exc_info=True,
            )
            await self.connect()
            return None

        self._readings = dataclasses.replace(self._readings, **updates)
        logger.debug("Inverter readings: %s", self._readings)
        return self._readings

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _read(self, reg_def: RegisterDef) -> list[int]:
        """Read one register's words.

        Raises:
            InverterReadError: On a Modbus error response.
        """
        response = await self._client.read_holding_registers(
            reg_def.address,
            count=reg_def.word_count,
            device_id=self._unit_id,
        )
        if response.isError():
            msg = (
                f"Modbus error reading '{reg_def.name}' "
                f"(address={reg_def.address}, count={reg_def.word_count})"
            )
            raise InverterReadError(msg)
        return list(response.registers)
