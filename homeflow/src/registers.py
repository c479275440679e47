"""
SMA Sunny Boy Modbus TCP register map -- single source of truth.

Defines the register addresses, data types, scaling factors, units and
"not a number" sentinels for the handful of SMA inverter registers the
daemon needs.  All registers are 32-bit values read as two 16-bit holding
registers (function code 0x03) from unit ID 3, the SMA default for the
inverter itself.

Unlike contiguous register blocks on other vendors, the SMA registers used
here are scattered over the address space, so each one is read on its own.

References:
    - SMA Modbus interface documentation, section "SMA Data Types and NaN Values"
    - SMA Firmware Data Formats (register 40063)

CHANGELOG:
- 2026-10-14: Add daily yield register for today's production
- 2026-10-12: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------

NAN_U32: int = 0xFFFFFFFF
"""NaN sentinel for U32 and FW registers (all bits set)."""

NAN_S32: int = 0x80000000
"""NaN sentinel for S32 registers (sign bit only)."""

NAN_ENUM: int = 0x00FFFFFD
"""NaN sentinel for ENUM registers (SMA reports this instead of all-ones)."""

_NAN_SENTINELS: dict[str, frozenset[int]] = {
    "U32": frozenset({NAN_U32}),
    "S32": frozenset({NAN_S32}),
    "ENUM": frozenset({NAN_U32, NAN_ENUM}),
    "FW": frozenset({NAN_U32}),
}


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a single SMA Modbus register.

    Attributes:
        address: Modbus holding register start address.
        name: Unique human-readable identifier used as dict key.
        reg_type: Data type -- one of ``"U32"``, ``"S32"``, ``"ENUM"``,
            ``"FW"``.
        unit: Engineering unit string (e.g. ``"W"``, ``"kWh"``, ``"A"``).
        scale: Multiplicative scaling factor applied to the raw integer
            value to obtain the engineering value.  For example 0.001 means
            the raw value is in thousandths of the unit.
        description: Free-text description of the register.
        word_count: Number of 16-bit Modbus words this register occupies.
        nan_values: Raw bit patterns that mean "no value".  Derived from
            *reg_type* when not set explicitly.
    """

    address: int
    name: str
    reg_type: str
    unit: str
    scale: float = 1.0
    description: str = ""
    word_count: int = 2
    nan_values: frozenset[int] = field(default=frozenset(), repr=False)

    def __post_init__(self) -> None:  # noqa: D105
        if self.reg_type not in _NAN_SENTINELS:
            msg = f"Register '{self.name}': unsupported type '{self.reg_type}'"
            raise ValueError(msg)
        if not self.nan_values:
            # frozen=True requires object.__setattr__
            object.__setattr__(self, "nan_values", _NAN_SENTINELS[self.reg_type])


# ---------------------------------------------------------------------------
# Device information (read once during discovery)
# ---------------------------------------------------------------------------

SERIAL_NUMBER = RegisterDef(
    address=30057,
    name="serial_number",
    reg_type="U32",
    unit="",
    description="Inverter serial number",
)

FIRMWARE_VERSION = RegisterDef(
    address=40063,
    name="firmware_version",
    reg_type="FW",
    unit="",
    description="Firmware version: BCD major, BCD minor, raw build, release type",
)

# ---------------------------------------------------------------------------
# Operating data (read every inverter poll)
# ---------------------------------------------------------------------------

CONDITION = RegisterDef(
    address=30201,
    name="condition",
    reg_type="ENUM",
    unit="",
    description="Device condition: 35 = fault, 303 = off, 307 = ok, 455 = warning",
)

AC_POWER = RegisterDef(
    address=30775,
    name="ac_power",
    reg_type="S32",
    unit="W",
    scale=1,
    description="Instantaneous AC production, all phases",
)

GRID_CURRENT = RegisterDef(
    address=30977,
    name="grid_current",
    reg_type="S32",
    unit="A",
    scale=0.001,
    description="Grid current phase L1",
)

GRID_VOLTAGE = RegisterDef(
    address=30783,
    name="grid_voltage",
    reg_type="U32",
    unit="V",
    scale=0.01,
    description="Grid voltage phase L1",
)

DAILY_YIELD = RegisterDef(
    address=30535,
    name="daily_yield",
    reg_type="U32",
    unit="kWh",
    scale=0.001,
    description="Energy produced today (device counts in Wh)",
)

GRID_IMPORT_TOTAL = RegisterDef(
    address=30581,
    name="grid_import_total",
    reg_type="U32",
    unit="kWh",
    scale=0.001,
    description="Grid reference counter reading (device counts in Wh)",
)

GRID_EXPORT_TOTAL = RegisterDef(
    address=30583,
    name="grid_export_total",
    reg_type="U32",
    unit="kWh",
    scale=0.001,
    description="Grid feed-in counter reading (device counts in Wh)",
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

METADATA_REGISTERS: tuple[RegisterDef, ...] = (SERIAL_NUMBER, FIRMWARE_VERSION)
"""Registers read once to learn the inverter's identity."""

DATA_REGISTERS: tuple[RegisterDef, ...] = (
    CONDITION,
    AC_POWER,
    DAILY_YIELD,
    GRID_IMPORT_TOTAL,
    GRID_EXPORT_TOTAL,
    GRID_CURRENT,
    GRID_VOLTAGE,
)
"""Registers read on the low-frequency data poll, in read order."""

ALL_REGISTERS: dict[str, RegisterDef] = {
    reg.name: reg for reg in (*METADATA_REGISTERS, *DATA_REGISTERS)
}
"""Flat lookup of every register by name."""
