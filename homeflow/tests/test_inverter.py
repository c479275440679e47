"""
Tests for the SMA inverter Modbus TCP client.

Verifies connection handling, the metadata poll (serial + firmware, kept
across partial failures) and the data poll (condition mapping, scaling,
sentinel handling, conditional current/voltage reads, reconnect on error).
Tests use a mocked AsyncModbusTcpClient.

CHANGELOG:
- 2026-10-15: Grid current/voltage only while producing
- 2026-10-12: Initial creation -- TDD tests written first (STORY-005)

TODO:
- None
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from homeflow.src.inverter import (
    InverterClient,
    InverterReadings,
    InverterStatus,
    inverter_values,
    map_condition,
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
    NAN_S32,
    SERIAL_NUMBER,
)

# ---------------------------------------------------------------------------
# Helpers: build a mock pymodbus client
# ---------------------------------------------------------------------------


def _words(raw: int) -> list[int]:
    return [(raw >> 16) & 0xFFFF, raw & 0xFFFF]


def _make_response(registers: list[int], is_error: bool = False) -> MagicMock:
    """Create a mock pymodbus response PDU."""
    resp = MagicMock()
    resp.isError.return_value = is_error
    resp.registers = registers
    return resp


def _default_values() -> dict[int, list[int]]:
    return {
        SERIAL_NUMBER.address: _words(3_012_345_678),
        FIRMWARE_VERSION.address: [0x0311, 0x0504],
        CONDITION.address: _words(307),
        AC_POWER.address: _words(4200),
        DAILY_YIELD.address: _words(12_345),
        GRID_IMPORT_TOTAL.address: _words(1_500_000),
        GRID_EXPORT_TOTAL.address: _words(2_250_500),
        GRID_CURRENT.address: _words(6_120),
        GRID_VOLTAGE.address: _words(23_150),
    }


def _make_mock_client(
    values: dict[int, list[int]] | None = None,
    *,
    connect_ok: bool = True,
    error_addresses: set[int] | None = None,
    raise_addresses: set[int] | None = None,
) -> AsyncMock:
    """Create a fully mocked AsyncModbusTcpClient.

    Args:
        values: Register words per address.  Defaults to plausible values.
        connect_ok: Whether connect() should return True.
        error_addresses: Addresses whose reads return Modbus errors.
        raise_addresses: Addresses whose reads raise a transport error.
    """
    values = values if values is not None else _default_values()
    error_addresses = error_addresses or set()
    raise_addresses = raise_addresses or set()

    client = AsyncMock()
    client.connect = AsyncMock(return_value=connect_ok)
    client.close = MagicMock()

    async def _read_holding_registers(
        address: int, *, count: int = 1, device_id: int = 1
    ) -> MagicMock:
        if address in raise_addresses:
            raise ConnectionError("Simulated Modbus transport error")
        if address in error_addresses or address not in values:
            return _make_response([], is_error=True)
        return _make_response(values[address][:count])

    client.read_holding_registers = AsyncMock(side_effect=_read_holding_registers)
    return client


def _read_addresses(client: AsyncMock) -> list[int]:
    return [call.args[0] for call in client.read_holding_registers.call_args_list]


# ===========================================================================
# Connection
# ===========================================================================


class TestConnect:
    def test_creates_client_with_host_port_and_timeout(self) -> None:
        with patch("homeflow.src.inverter.AsyncModbusTcpClient") as mock_cls:
            InverterClient(host="10.0.0.5", port=1502)
        mock_cls.assert_called_once_with("10.0.0.5", port=1502, timeout=10.0)

    @pytest.mark.asyncio
    async def test_connect_closes_previous_transport(self) -> None:
        client = _make_mock_client()
        inverter = InverterClient(host="10.0.0.5", client=client)

        assert await inverter.connect() is True
        client.close.assert_called_once()
        client.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_false_does_not_raise(self) -> None:
        inverter = InverterClient(
            host="10.0.0.5", client=_make_mock_client(connect_ok=False)
        )
        assert await inverter.connect() is False

    @pytest.mark.asyncio
    async def test_connect_exception_does_not_raise(self) -> None:
        client = _make_mock_client()
        client.connect = AsyncMock(side_effect=OSError("unreachable"))
        inverter = InverterClient(host="10.0.0.5", client=client)
        assert await inverter.connect() is False

    @pytest.mark.asyncio
    async def test_reads_use_unit_id(self) -> None:
        client = _make_mock_client()
        inverter = InverterClient(host="10.0.0.5", unit_id=3, client=client)
        await inverter.poll_data()
        for call in client.read_holding_registers.call_args_list:
            assert call.kwargs["device_id"] == 3
            assert call.kwargs["count"] == 2


# ===========================================================================
# Metadata poll
# ===========================================================================


class TestPollMetadata:
    @pytest.mark.asyncio
    async def test_identity_from_serial_and_firmware(self) -> None:
        on_identity = MagicMock()
        inverter = InverterClient(
            host="h", client=_make_mock_client(), on_identity=on_identity
        )

        identity = await inverter.poll_metadata()

        assert identity == DeviceIdentity(
            serial_number=3_012_345_678, firmware_revision="3.11.5.R"
        )
        on_identity.assert_called_once_with(identity)

    @pytest.mark.asyncio
    async def test_noop_once_known(self) -> None:
        client = _make_mock_client()
        on_identity = MagicMock()
        inverter = InverterClient(host="h", client=client, on_identity=on_identity)
        await inverter.poll_metadata()
        client.read_holding_registers.reset_mock()

        await inverter.poll_metadata()

        client.read_holding_registers.assert_not_called()
        on_identity.assert_called_once()

    @pytest.mark.asyncio
    async def test_partial_result_kept_across_polls(self) -> None:
        failing = {FIRMWARE_VERSION.address}
        client = _make_mock_client(error_addresses=failing)
        on_identity = MagicMock()
        inverter = InverterClient(host="h", client=client, on_identity=on_identity)

        assert await inverter.poll_metadata() is None
        on_identity.assert_not_called()
        # A failed half triggers a reconnect.
        client.connect.assert_awaited()

        # Next poll: serial now fails, firmware succeeds; serial is remembered.
        failing.clear()
        failing.add(SERIAL_NUMBER.address)

        identity = await inverter.poll_metadata()

        assert identity is not None
        assert identity.serial_number == 3_012_345_678
        assert identity.firmware_revision == "3.11.5.R"
        on_identity.assert_called_once_with(identity)

    @pytest.mark.asyncio
    async def test_transport_error_does_not_raise(self) -> None:
        client = _make_mock_client(
            raise_addresses={SERIAL_NUMBER.address, FIRMWARE_VERSION.address}
        )
        inverter = InverterClient(host="h", client=client)
        assert await inverter.poll_metadata() is None
        assert inverter.identity is None


# ===========================================================================
# Data poll
# ===========================================================================


class TestPollData:
    @pytest.mark.asyncio
    async def test_reads_and_scales_operating_registers(self) -> None:
        inverter = InverterClient(host="h", client=_make_mock_client())

        readings = await inverter.poll_data()

        assert readings is not None
        assert readings.status == InverterStatus(307, active=True, fault=False)
        assert readings.production_w == 4200
        assert readings.yield_today_kwh == pytest.approx(12.345)
        assert readings.total_import_kwh == pytest.approx(1500.0)
        assert readings.total_export_kwh == pytest.approx(2250.5)
        assert inverter.production_w == 4200

    @pytest.mark.asyncio
    async def test_current_and_voltage_skipped_when_idle(self) -> None:
        client = _make_mock_client()
        inverter = InverterClient(host="h", client=client)

        readings = await inverter.poll_data(latest_production_w=0.0)

        assert readings is not None
        assert readings.amperes is None
        assert readings.volts is None
        assert GRID_CURRENT.address not in _read_addresses(client)
        assert GRID_VOLTAGE.address not in _read_addresses(client)

    @pytest.mark.asyncio
    async def test_current_and_voltage_read_while_producing(self) -> None:
        inverter = InverterClient(host="h", client=_make_mock_client())

        readings = await inverter.poll_data(latest_production_w=1500.0)

        assert readings is not None
        assert readings.amperes == pytest.approx(6.12)
        assert readings.volts == pytest.approx(231.5)

    @pytest.mark.asyncio
    async def test_sentinel_keeps_previous_value(self) -> None:
        values = _default_values()
        client = _make_mock_client(values)
        inverter = InverterClient(host="h", client=client)
        await inverter.poll_data()

        values[AC_POWER.address] = _words(NAN_S32)
        readings = await inverter.poll_data()

        assert readings is not None
        assert readings.production_w == 4200

    @pytest.mark.asyncio
    async def test_error_reconnects_and_returns_none(self) -> None:
        client = _make_mock_client(error_addresses={GRID_IMPORT_TOTAL.address})
        inverter = InverterClient(host="h", client=client)

        assert await inverter.poll_data() is None
        client.connect.assert_awaited_once()
        # Nothing from the failed poll is applied.
        assert inverter.readings == InverterReadings()

    @pytest.mark.asyncio
    async def test_transport_exception_reconnects(self) -> None:
        client = _make_mock_client(raise_addresses={CONDITION.address})
        inverter = InverterClient(host="h", client=client)
        assert await inverter.poll_data() is None
        client.connect.assert_awaited_once()


# ===========================================================================
# Condition mapping and published values
# ===========================================================================


class TestCondition:
    @pytest.mark.parametrize(
        ("condition", "active", "fault"),
        [
            (35, False, True),
            (455, True, True),
            (303, False, False),
            (307, True, False),
            (999, False, False),
        ],
    )
    def test_map_condition(self, condition: int, active: bool, fault: bool) -> None:
        status = map_condition(condition)
        assert (status.active, status.fault) == (active, fault)

    def test_inverter_values_only_known_fields(self) -> None:
        readings = InverterReadings(
            status=map_condition(307), production_w=100.0, volts=230.0
        )
        assert inverter_values(readings) == {
            "inverter.active": True,
            "inverter.fault": False,
            "inverter.production_w": 100.0,
            "inverter.volts": 230.0,
        }
