"""
Speedwire energy meter datagram codec.

The SMA Home Manager / Energy Meter broadcasts one UDP multicast datagram
per second.  Layout (all integers big-endian):

======  ==========================================================
bytes   content
======  ==========================================================
0-3     ``"SMA\\0"`` tag
4-5     body length indicator, always 4
6-7     tag ``02 A0``
8-11    group (ignored)
12-13   data length (ignored, implied by the datagram length)
14-15   tag ``00 10``
16-17   protocol ID: 0x6069 energy meter, 0x6065 Speedwire discovery
18-19   device model ("Susy ID")
20-23   device serial number
24-27   measurement ticker in ms, wraps at 2**32
28..-4  OBIS measurement blocks
-4..    end-of-data trailer ``00 00 00 00``
======  ==========================================================

Each OBIS block is a 4-byte header followed by its payload.  Header byte 0
is the channel; channel 144 is the SMA software version block (4 bytes).
Otherwise byte 1 is the measured value index and byte 2 the measurement
type: 4 = instantaneous value (4 bytes), 8 = meter reading (8 bytes).  Any
other type has an unknown payload length, so decoding stops there.

Validation and decoding are separate: :func:`is_valid_datagram` checks the
fixed framing and logs why a datagram is discarded; :func:`decode_datagram`
never raises for a datagram that passed validation.

CHANGELOG:
- 2026-10-15: Add encode_datagram() for tests and field simulators
- 2026-10-12: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SMA_TAG: bytes = b"SMA\x00"
BODY_LENGTH_INDICATOR: int = 4
TAG_DATA: bytes = b"\x02\xa0"
TAG_VERSION: bytes = b"\x00\x10"
PROTOCOL_ENERGY_METER: int = 0x6069
PROTOCOL_DISCOVERY: int = 0x6065
TRAILER: bytes = b"\x00\x00\x00\x00"

HEADER_LENGTH: int = 28
"""Bytes before the first OBIS block."""

MIN_DATAGRAM_LENGTH: int = HEADER_LENGTH + len(TRAILER)

CHANNEL_VERSION: int = 144
TYPE_INSTANTANEOUS: int = 4
TYPE_METER_READING: int = 8

INDEX_IMPORT_POWER: int = 1
INDEX_EXPORT_POWER: int = 2

_BLOCK_LENGTHS: dict[int, int] = {
    TYPE_INSTANTANEOUS: 4,
    TYPE_METER_READING: 8,
}


# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ObisHeader:
    """Decoded 4-byte OBIS block header.

    Attributes:
        kind: ``"version"``, ``"power"`` or ``"energy"``.
        index: Measured value index (1 = import, 2 = export, ...).
        length: Payload length in bytes following the header.
    """

    kind: str
    index: int
    length: int


@dataclass(frozen=True, slots=True)
class MeterFrame:
    """Result of decoding one energy meter datagram.

    Attributes:
        model: Device model ("Susy ID") from bytes 18-19.
        serial_number: Device serial number from bytes 20-23.
        timestamp: Measurement ticker converted to seconds (wraps).
        net_watts: Net grid power; positive = importing, negative =
            exporting, ``None`` when the datagram carried no positive
            import or export reading.
        firmware_revision: ``"major.minor.build.release"`` from the
            version block, only when it was requested and present.
    """

    model: int
    serial_number: int
    timestamp: float
    net_watts: float | None
    firmware_revision: str | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def is_valid_datagram(data: bytes) -> bool:
    """Check the fixed framing of an energy meter datagram.

    Discovery datagrams are valid Speedwire but carry no measurements; they
    are rejected silently.  Every other rejection is logged with its reason.

    Returns:
        True only for well-formed energy meter datagrams.
    """
    if len(data) < MIN_DATAGRAM_LENGTH:
        logger.warning("Datagram too short (%d bytes), discarding", len(data))
        return False

    header = data[0:4]
    if header != SMA_TAG:
        logger.warning("Invalid datagram header %r, discarding", header)
        return False

    tag_data = data[6:8]
    tag_version = data[14:16]
    if tag_data != TAG_DATA or tag_version != TAG_VERSION:
        logger.warning(
            "Datagram with unknown structure (tags %s %s), discarding",
            tag_data.hex(),
            tag_version.hex(),
        )
        return False

    (protocol_id,) = struct.unpack_from(">H", data, 16)
    if protocol_id != PROTOCOL_ENERGY_METER:
        if protocol_id == PROTOCOL_DISCOVERY:
            logger.debug("Speedwire discovery datagram, ignoring")
        else:
            logger.warning(
                "Datagram with unknown protocol ID 0x%04X, discarding", protocol_id
            )
        return False

    (length_indicator,) = struct.unpack_from(">H", data, 4)
    if length_indicator != BODY_LENGTH_INDICATOR:
        logger.warning(
            "Datagram with unexpected body length indicator %d, discarding",
            length_indicator,
        )
        return False

    trailer = data[-4:]
    if trailer != TRAILER:
        logger.warning("Invalid datagram trailer %s, discarding", trailer.hex())
        return False

    return True


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def parse_obis_header(header: bytes) -> ObisHeader | None:
    """Classify a 4-byte OBIS header.

    Returns:
        The decoded header, or ``None`` for a measurement type whose
        payload length is unknown.
    """
    channel, index, measurement_type = header[0], header[1], header[2]
    if channel == CHANNEL_VERSION:
        return ObisHeader(kind="version", index=0, length=4)
    if measurement_type == TYPE_INSTANTANEOUS:
        return ObisHeader(kind="power", index=index, length=4)
    if measurement_type == TYPE_METER_READING:
        return ObisHeader(kind="energy", index=index, length=8)
    return None


def _format_version(payload: bytes) -> str:
    """Format a version block as ``"major.minor.build.release"``."""
    release = payload[3:4].decode("latin-1")
    return f"{payload[0]}.{payload[1]}.{payload[2]}.{release}"


def decode_datagram(data: bytes, *, want_version: bool = True) -> MeterFrame:
    """Decode a datagram that passed :func:`is_valid_datagram`.

    Walks the OBIS blocks until the body is exhausted.  Only positive
    import/export readings are informative: a zero reading never
    overwrites a non-zero net value seen earlier in the same datagram.

    Args:
        data: Complete datagram bytes.
        want_version: Decode the version block.  Callers pass False once
            the meter's identity is known.

    Returns:
        The decoded :class:`MeterFrame`.
    """
    model, serial_number, ticker_ms = struct.unpack_from(">HII", data, 18)
    body = memoryview(data)[HEADER_LENGTH : len(data) - len(TRAILER)]

    net_watts: float | None = None
    firmware_revision: str | None = None

    while len(body) > 0:
        if len(body) < 4:
            logger.warning("Truncated OBIS header (%d bytes left), stopping", len(body))
            break
        header_bytes = bytes(body[0:4])
        header = parse_obis_header(header_bytes)
        if header is None:
            logger.warning(
                "Unknown OBIS measurement type in header %s, stopping",
                header_bytes.hex(),
            )
            break
        payload = bytes(body[4 : 4 + header.length])
        if len(payload) < header.length:
            logger.warning(
                "Truncated OBIS block %s (%d of %d bytes), stopping",
                header_bytes.hex(),
                len(payload),
                header.length,
            )
            break

        if header.kind == "power" and header.index in (
            INDEX_IMPORT_POWER,
            INDEX_EXPORT_POWER,
        ):
            (raw,) = struct.unpack(">I", payload)
            watts = raw / 10
            if watts > 0:
                net_watts = watts if header.index == INDEX_IMPORT_POWER else -watts
        elif header.kind == "version" and want_version:
            firmware_revision = _format_version(payload)

        body = body[4 + header.length :]

    return MeterFrame(
        model=model,
        serial_number=serial_number,
        timestamp=ticker_ms / 1000,
        net_watts=net_watts,
        firmware_revision=firmware_revision,
    )


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def power_block(index: int, watts: float) -> bytes:
    """Build an instantaneous power OBIS block (0.1 W resolution)."""
    return bytes([0, index, TYPE_INSTANTANEOUS, 0]) + struct.pack(
        ">I", round(watts * 10)
    )


def energy_block(index: int, watt_seconds: int) -> bytes:
    """Build a meter reading OBIS block (Ws counter)."""
    return bytes([0, index, TYPE_METER_READING, 0]) + struct.pack(">Q", watt_seconds)


def version_block(major: int, minor: int, build: int, release: str) -> bytes:
    """Build the SMA software version block."""
    return bytes([CHANNEL_VERSION, 0, 0, 0, major, minor, build]) + release.encode(
        "latin-1"
    )[:1]


def encode_datagram(
    *,
    serial_number: int,
    model: int = 349,
    timestamp_ms: int = 0,
    blocks: Iterable[bytes] = (),
    protocol_id: int = PROTOCOL_ENERGY_METER,
    group: int = 1,
) -> bytes:
    """Assemble a complete energy meter datagram.

    Args:
        serial_number: Device serial number (u32).
        model: Device model ("Susy ID", u16).
        timestamp_ms: Measurement ticker in milliseconds (wrapped to u32).
        blocks: Pre-built OBIS blocks, see :func:`power_block`,
            :func:`energy_block` and :func:`version_block`.
        protocol_id: Protocol ID (energy meter by default).
        group: Speedwire group number.
    """
    body = b"".join(blocks)
    data_length = 2 + 2 + 4 + 4 + len(body)
    header = (
        SMA_TAG
        + struct.pack(">H", BODY_LENGTH_INDICATOR)
        + TAG_DATA
        + struct.pack(">IH", group, data_length)
        + TAG_VERSION
        + struct.pack(
            ">HHII",
            protocol_id,
            model,
            serial_number,
            timestamp_ms & 0xFFFFFFFF,
        )
    )
    return header + body + TRAILER
