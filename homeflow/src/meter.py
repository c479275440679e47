"""
Speedwire multicast listener for the SMA energy meter.

Binds UDP port 9522, joins the Speedwire multicast group and hands every
valid energy meter datagram to the fusion step.  Runs under a supervisor
loop (:meth:`MeterListener.run`):

1. Bind the socket and join the group.
2. Every 120 s drop and re-add the group membership.  Multicast membership
   can lapse silently (IGMP snooping switches, kernel quirks), and the meter
   stops sending once it believes nobody is listening.  Dropping a
   membership that already lapsed is ignored, so the refresh is idempotent.
3. On a socket error the error handler only records the failure and marks
   dependent values unavailable.  The supervisor then tears the socket down,
   waits a fixed delay and rebinds.  Rebinding never happens inside the
   error handler itself.

CHANGELOG:
- 2026-10-15: Supervisor loop replaces restart-from-error-handler
- 2026-10-13: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import struct
from collections.abc import Callable
from datetime import UTC, datetime

from homeflow.src.discovery import DiscoveryGate
from homeflow.src.models import DeviceIdentity
from homeflow.src.speedwire import MeterFrame, decode_datagram, is_valid_datagram

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MULTICAST_GROUP: str = "239.12.255.254"
"""Speedwire multicast group used by SMA energy meters."""

SPEEDWIRE_PORT: int = 9522
"""IANA "sma-spw" port."""

MEMBERSHIP_REFRESH_S: float = 120.0
"""Seconds between proactive membership drop/re-add."""

RESTART_DELAY_S: float = 10.0
"""Seconds to wait after a socket error before rebinding."""


class _SpeedwireProtocol(asyncio.DatagramProtocol):
    """asyncio protocol forwarding socket events to the listener."""

    def __init__(self, listener: MeterListener) -> None:
        self._listener = listener

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._listener.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self._listener.handle_error(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self._listener.handle_error(exc)


class MeterListener:
    """Receives and decodes energy meter datagrams.

    Args:
        on_reading: Called with every decoded :class:`MeterFrame`.
        gate: Discovery gate fed with the meter identity (one-shot).
        on_unavailable: Called once per socket failure so dependent
            published values can be marked unavailable.
        group: Multicast group address.
        port: UDP port.
        interface: Local interface address used for the membership.
        refresh_interval_s: Seconds between membership refreshes.
        restart_delay_s: Seconds to wait before rebinding after an error.
    """

    def __init__(
        self,
        *,
        on_reading: Callable[[MeterFrame], None],
        gate: DiscoveryGate | None = None,
        on_unavailable: Callable[[], None] | None = None,
        group: str = MULTICAST_GROUP,
        port: int = SPEEDWIRE_PORT,
        interface: str = "0.0.0.0",
        refresh_interval_s: float = MEMBERSHIP_REFRESH_S,
        restart_delay_s: float = RESTART_DELAY_S,
    ) -> None:
        self._on_reading = on_reading
        self._gate = gate
        self._on_unavailable = on_unavailable
        self._group = group
        self._port = port
        self._interface = interface
        self._refresh_interval_s = refresh_interval_s
        self._restart_delay_s = restart_delay_s
        self._sock: socket.socket | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._failed = asyncio.Event()
        self._datagram_count: int = 0
        self._last_datagram_at: datetime | None = None

    @property
    def datagram_count(self) -> int:
        """Valid energy meter datagrams received since startup."""
        return self._datagram_count

    @property
    def last_datagram_at(self) -> datetime | None:
        return self._last_datagram_at

    # ------------------------------------------------------------------
    # Socket event handlers
    # ------------------------------------------------------------------

    def handle_datagram(
        self, data: bytes, addr: tuple[str, int] | None = None
    ) -> MeterFrame | None:
        """Validate, decode and forward one datagram.

        Invalid datagrams are dropped (the reason is logged by the codec).
        Never raises.
        """
        if not is_valid_datagram(data):
            return None

        want_version = self._gate is not None and self._gate.meter is None
        try:
            frame = decode_datagram(data, want_version=want_version)
        except (struct.error, ValueError, IndexError):
            logger.warning(
                "Failed to decode datagram from %s, discarding", addr, exc_info=True
            )
            return None

        self._datagram_count += 1
        self._last_datagram_at = datetime.now(tz=UTC)

        if want_version and frame.firmware_revision is not None:
            self._gate.set_meter(  # type: ignore[union-attr]
                DeviceIdentity(
                    serial_number=frame.serial_number,
                    firmware_revision=frame.firmware_revision,
                    model=frame.model,
                )
            )

        self._on_reading(frame)
        return frame

    def handle_error(self, exc: BaseException) -> None:
        """Record a socket failure; the supervisor performs the restart."""
        if self._failed.is_set():
            return
        logger.error("Speedwire listener error: %s", exc)
        self._failed.set()
        if self._on_unavailable is not None:
            self._on_unavailable()

    # ------------------------------------------------------------------
    # Socket lifecycle
    # ------------------------------------------------------------------

    def _membership_request(self) -> bytes:
        return struct.pack(
            "4s4s",
            socket.inet_aton(self._group),
            socket.inet_aton(self._interface),
        )

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                with contextlib.suppress(OSError):
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", self._port))
            sock.setsockopt(
                socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, self._membership_request()
            )
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> bool:
        """Bind, join the multicast group and start receiving.

        Returns:
            True when listening; False after a logged failure.
        """
        try:
            sock = self._open_socket()
        except OSError:
            logger.error(
                "Failed to bind Speedwire listener on port %d / group %s",
                self._port,
                self._group,
                exc_info=True,
            )
            return False

        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _SpeedwireProtocol(self), sock=sock
            )
        except OSError:
            logger.error("Failed to start Speedwire listener", exc_info=True)
            sock.close()
            return False

        self._sock = sock
        self._transport = transport
        logger.info(
            "Listening for Speedwire datagrams on %s:%d", self._group, self._port
        )
        return True

    def stop(self) -> None:
        """Tear down the socket (safe to call repeatedly)."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        elif self._sock is not None:
            self._sock.close()
        self._sock = None

    def refresh_membership(self) -> None:
        """Drop and re-add the multicast membership."""
        if self._sock is None:
            return
        logger.debug("Dropping and re-adding multicast membership")
        request = self._membership_request()
        with contextlib.suppress(OSError):
            self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, request)
        try:
            self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, request)
        except OSError as exc:
            self.handle_error(exc)

    # ------------------------------------------------------------------
    # Supervisor
    # ------------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Listen until shutdown, restarting after every socket failure."""
        logger.info("Speedwire listener started")
        while not shutdown_event.is_set():
            self._failed.clear()
            if await self.start():
                await self._serve(shutdown_event)
            else:
                self.handle_error(OSError("bind failed"))
            self.stop()

            if shutdown_event.is_set():
                break
            logger.warning(
                "Restarting Speedwire listener in %.0fs", self._restart_delay_s
            )
            await _wait_any((shutdown_event,), self._restart_delay_s)
        self.stop()
        logger.info("Speedwire listener stopped")

    async def _serve(self, shutdown_event: asyncio.Event) -> None:
        """Refresh the membership periodically until failure or shutdown."""
        while True:
            woke = await _wait_any(
                (shutdown_event, self._failed), self._refresh_interval_s
            )
            if woke:
                return
            self.refresh_membership()


async def _wait_any(events: tuple[asyncio.Event, ...], timeout: float) -> bool:
    """Wait until any event is set or *timeout* passes; True if an event fired."""
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for waiter in waiters:
            waiter.cancel()
    return bool(done)
