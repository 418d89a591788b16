"""Tests for the high-level BMS client against the JK emulator."""

from __future__ import annotations

import asyncio
from typing import Any, NoReturn

import pytest
from bleak.exc import BleakError

from tests.support.fixtures.sample_frames import EMULATED_ADDRESS
from ubmsc_driver.base.discovery import DeviceLocator, DeviceSelector
from ubmsc_driver.base.exceptions import (
    ConnectFailedError,
    ConnectionLostError,
    DecodeError,
    DeviceNotFoundError,
    ProtocolTimeoutError,
    ScanTimeoutError,
    SessionClosedError,
)
from ubmsc_driver.client import BMSClient, ClientOptions
from ubmsc_driver.jk.constants import JK_SERVICE_UUID
from ubmsc_driver.jk.emulator import EmulatedBus


def make_client(bus: EmulatedBus, selector: str = EMULATED_ADDRESS, **options: Any) -> BMSClient:
    """Build a client wired to the emulated bus."""
    opts = {"scan_timeout": 1.0, "request_timeout": 1.0, **options}
    return BMSClient(
        selector,
        ClientOptions(**opts),
        locator=DeviceLocator(JK_SERVICE_UUID, scanner_factory=bus.scanner),
        client_factory=bus.client,
    )


class TestFind:
    """Test device discovery through the client."""

    @pytest.mark.asyncio
    async def test_find_all(self, bus: EmulatedBus) -> None:
        """Test an empty selector list returns every advertised device."""
        locator = DeviceLocator(JK_SERVICE_UUID, scanner_factory=bus.scanner)
        found = await BMSClient.find([], ClientOptions(scan_timeout=0.05), locator=locator)
        assert found == [DeviceSelector.parse(EMULATED_ADDRESS)]

    @pytest.mark.asyncio
    async def test_find_by_name(self, bus: EmulatedBus) -> None:
        """Test a name fragment finds the device."""
        locator = DeviceLocator(JK_SERVICE_UUID, scanner_factory=bus.scanner)
        found = await BMSClient.find(["BD4A"], ClientOptions(scan_timeout=1), locator=locator)
        assert [str(s) for s in found] == [EMULATED_ADDRESS]

    @pytest.mark.asyncio
    async def test_find_nothing(self, bus: EmulatedBus) -> None:
        """Test a selector nobody matches."""
        locator = DeviceLocator(JK_SERVICE_UUID, scanner_factory=bus.scanner)
        assert await BMSClient.find(["JK_XX"], ClientOptions(scan_timeout=0.05), locator=locator) == []


class TestQueries:
    """Test reading records."""

    @pytest.mark.asyncio
    async def test_device_info(self, bus: EmulatedBus, expected_device_info: dict[str, Any]) -> None:
        """Test the device info record of the emulated pack."""
        async with make_client(bus) as client:
            info = await client.device_info()
        assert info.to_dict() == expected_device_info

    @pytest.mark.asyncio
    async def test_cell_data(self, bus: EmulatedBus, expected_cell_data: dict[str, Any]) -> None:
        """Test the cell data record of the emulated pack."""
        async with make_client(bus) as client:
            cells = await client.cell_data()
            assert client.peripheral is not None
            assert client.peripheral.name == "JK_BD4A8S4P"
        assert {name: getattr(cells, name) for name in expected_cell_data} == expected_cell_data

    @pytest.mark.asyncio
    async def test_open_by_name(self, bus: EmulatedBus) -> None:
        """Test a client selected by advertised name."""
        client = make_client(bus, "JK_BD4A")
        await client.open()
        assert client.device_id == "JK_BD4A"
        assert (await client.device_info()).device_model == "JK_BD4A8S4P"
        await client.close()

    @pytest.mark.asyncio
    async def test_repeated_queries(self, bus: EmulatedBus) -> None:
        """Test one session serves several queries."""
        client = make_client(bus)
        await client.open()
        await client.open()
        for _ in range(3):
            await client.cell_data()
        assert len(bus.clients[EMULATED_ADDRESS].written) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_concurrent_queries(self, bus: EmulatedBus) -> None:
        """Test concurrent callers share the session."""
        client = make_client(bus)
        await client.open()
        info, cells = await asyncio.gather(client.device_info(), client.cell_data())
        assert info.device_name == "abcdefgh"
        assert cells.cell_count == 6
        await client.close()

    @pytest.mark.asyncio
    async def test_undecodable_payload(self, bus: EmulatedBus) -> None:
        """Test a cell record with an impossible state of charge."""
        device = bus.devices[EMULATED_ADDRESS]
        payload = bytearray(device.cell_data)
        payload[168] = 150
        device.cell_data = bytes(payload)
        async with make_client(bus) as client:
            with pytest.raises(DecodeError):
                await client.cell_data()
            assert client.is_open


class TestLifecycle:
    """Test open and close semantics."""

    @pytest.mark.asyncio
    async def test_query_before_open(self, bus: EmulatedBus) -> None:
        """Test queries on an unopened client fail without I/O."""
        client = make_client(bus)
        with pytest.raises(SessionClosedError) as exc_info:
            await client.device_info()
        assert exc_info.value.context["operation"] == "device_info"
        assert bus.clients == {}

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, bus: EmulatedBus) -> None:
        """Test close can be called repeatedly and blocks later queries."""
        client = make_client(bus)
        await client.open()
        await client.close()
        await client.close()
        assert not client.is_open
        with pytest.raises(SessionClosedError):
            await client.cell_data()

    @pytest.mark.asyncio
    async def test_scan_timeout(self, bus: EmulatedBus) -> None:
        """Test an absent device ends the scan window with a timeout."""
        client = make_client(bus, "AA:BB:CC:DD:EE:FF", scan_timeout=0.05)
        with pytest.raises(ScanTimeoutError) as exc_info:
            await client.open()
        assert exc_info.value.context == {"selector": "AA:BB:CC:DD:EE:FF", "scan_timeout": 0.05}

    @pytest.mark.asyncio
    async def test_not_seen_without_scan(self, bus: EmulatedBus) -> None:
        """Test a zero scan timeout only consults earlier observations."""
        client = make_client(bus, scan_timeout=0)
        with pytest.raises(DeviceNotFoundError) as exc_info:
            await client.open()
        assert type(exc_info.value) is DeviceNotFoundError

    @pytest.mark.asyncio
    async def test_connect_failure(self, bus: EmulatedBus) -> None:
        """Test a transport that refuses the connection."""

        def refuse(*_args: Any, **_kwargs: Any) -> NoReturn:
            raise BleakError("Adapter busy")

        client = BMSClient(
            EMULATED_ADDRESS,
            ClientOptions(scan_timeout=1.0),
            locator=DeviceLocator(JK_SERVICE_UUID, scanner_factory=bus.scanner),
            client_factory=refuse,
        )
        with pytest.raises(ConnectFailedError):
            await client.open()
        assert not client.is_open

    @pytest.mark.asyncio
    async def test_scanner_unavailable(self, bus: EmulatedBus) -> None:
        """Test a missing adapter fails open() with a BMS error."""

        def no_adapter(**_kwargs: Any) -> NoReturn:
            raise BleakError("No Bluetooth adapters found.")

        client = BMSClient(
            EMULATED_ADDRESS,
            ClientOptions(scan_timeout=1.0),
            locator=DeviceLocator(JK_SERVICE_UUID, scanner_factory=no_adapter),
            client_factory=bus.client,
        )
        with pytest.raises(ConnectFailedError) as exc_info:
            await client.open()
        assert exc_info.value.context["stage"] == "scan"
        assert not client.is_open

    @pytest.mark.asyncio
    async def test_timeout_keeps_session(self, bus: EmulatedBus) -> None:
        """Test a missed answer leaves the client usable."""
        client = make_client(bus, request_timeout=0.05)
        await client.open()
        bus.clients[EMULATED_ADDRESS].silent = True
        with pytest.raises(ProtocolTimeoutError):
            await client.device_info()
        assert client.is_open
        bus.clients[EMULATED_ADDRESS].silent = False
        assert (await client.device_info()).serial_number == "40531310629"
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_lost_and_reopen(self, bus: EmulatedBus) -> None:
        """Test a dropped link closes the client and a new open recovers."""
        client = make_client(bus)
        await client.open()
        emulator = bus.clients[EMULATED_ADDRESS]
        emulator.silent = True
        task = asyncio.create_task(client.cell_data())
        await asyncio.sleep(0.01)
        emulator.drop_connection()
        with pytest.raises(ConnectionLostError):
            await task
        assert not client.is_open

        await client.open()
        assert bus.clients[EMULATED_ADDRESS] is not emulator
        assert (await client.cell_data()).cell_count == 6
        await client.close()
