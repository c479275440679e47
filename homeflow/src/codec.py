"""
Pure decoders for SMA inverter register replies.

Takes the raw 16-bit word lists returned by a Modbus holding-register read,
assembles them into 32-bit integers (high word first), recognises the
per-type NaN sentinels and applies the register's scaling factor.

Every decoder returns ``None`` for "no value" instead of 0 or a garbage
number, so callers can leave the previously published value untouched.

CHANGELOG:
- 2026-10-13: Keep raw build byte in firmware strings (decoding unknown)
- 2026-10-12: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import logging

from homeflow.src.registers import RegisterDef

logger = logging.getLogger(__name__)

RELEASE_TYPES: dict[int, str] = {
    0: "N",
    1: "E",
    2: "A",
    3: "B",
    4: "R",
    5: "S",
}
"""Firmware release type byte -> letter (N, Experimental, Alpha, Beta, R, Special)."""


# ---------------------------------------------------------------------------
# Type conversion helpers
# ---------------------------------------------------------------------------


def _convert_u32(hi: int, lo: int) -> int:
    """Assemble two U16 registers (high word first) into unsigned 32-bit."""
    return ((hi & 0xFFFF) << 16) | (lo & 0xFFFF)


def _convert_s32(raw: int) -> int:
    """Reinterpret an unsigned 32-bit value as signed (two's complement)."""
    if raw >= 0x80000000:
        raw -= 0x100000000
    return raw


def _from_bcd(byte: int) -> int:
    """Decode one packed BCD byte (0x12 -> 12)."""
    return (byte >> 4) * 10 + (byte & 0x0F)


def _raw_u32(reg_def: RegisterDef, words: list[int]) -> int | None:
    """Return the raw unsigned 32-bit value, or None if it is unusable."""
    if len(words) < 2:
        logger.warning(
            "Register '%s': expected 2 words for %s, got %d",
            reg_def.name,
            reg_def.reg_type,
            len(words),
        )
        return None
    raw = _convert_u32(words[0], words[1])
    if raw in reg_def.nan_values:
        logger.debug("Register '%s': NaN sentinel 0x%08X", reg_def.name, raw)
        return None
    return raw


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def decode_register(reg_def: RegisterDef, words: list[int]) -> float | None:
    """Decode and scale a numeric U32/S32 register.

    Args:
        reg_def: Register definition (type, scale, sentinels).
        words: Raw 16-bit words from the Modbus reply, high word first.
            Only the first two words are used.

    Returns:
        The scaled engineering value, or ``None`` when the register holds
        its NaN sentinel or the reply is too short.
    """
    raw = _raw_u32(reg_def, words)
    if raw is None:
        return None
    if reg_def.reg_type == "S32":
        raw = _convert_s32(raw)
    return raw * reg_def.scale


def decode_enum(reg_def: RegisterDef, words: list[int]) -> int | None:
    """Decode an ENUM register into its numeric code (unscaled)."""
    return _raw_u32(reg_def, words)


def decode_serial(reg_def: RegisterDef, words: list[int]) -> int | None:
    """Decode a U32 serial number register (unscaled)."""
    return _raw_u32(reg_def, words)


def decode_firmware(reg_def: RegisterDef, words: list[int]) -> str | None:
    """Decode an SMA FW register into ``"major.minor.build.release"``.

    Byte layout (big-endian across the two words):

    - byte 0: BCD major version
    - byte 1: BCD minor version
    - byte 2: build number, kept as the raw byte value.  Observed devices do
      not always match the documented build, and the correct transform is
      unknown, so no correction is attempted.
    - byte 3: release type, 0-5 mapped to a letter, anything else passed
      through as its number.
    """
    raw = _raw_u32(reg_def, words)
    if raw is None:
        return None
    major, minor, build, release = raw.to_bytes(4, "big")
    release_label = RELEASE_TYPES.get(release, str(release))
    return f"{_from_bcd(major)}.{_from_bcd(minor)}.{build}.{release_label}"
