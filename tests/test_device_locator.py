"""Tests for BLE discovery and selector matching."""

from __future__ import annotations

import time

import pytest
from bleak.exc import BleakError

from tests.support.mocks.fake_ble import FakeAdvertisement, FakeDevice, FakeScanner
from ubmsc_driver.base.discovery import (
    DeviceAddress,
    DeviceLocator,
    DeviceSelector,
    PeripheralHandle,
    as_selectors,
)
from ubmsc_driver.base.exceptions import ConnectFailedError
from ubmsc_driver.jk.constants import JK_SERVICE_UUID

PACK_A = FakeDevice("C8:47:80:12:34:56", "JK_BD4A8S4P")
PACK_B = FakeDevice("C8:47:80:AB:CD:EF", "JK_B2A20S20P")
OTHER = FakeDevice("11:22:33:44:55:66", "Thermometer")


class TestDeviceAddress:
    """Test MAC address parsing."""

    def test_parse_and_format(self) -> None:
        """Test colon and dash forms normalize to upper-case colons."""
        assert str(DeviceAddress.parse("c8:47:80:12:34:56")) == "C8:47:80:12:34:56"
        assert str(DeviceAddress.parse("c8-47-80-12-34-56")) == "C8:47:80:12:34:56"

    def test_invalid(self) -> None:
        """Test strings that are not addresses."""
        assert not DeviceAddress.is_address("C8:47:80:12:34")
        assert not DeviceAddress.is_address("C8:47-80:12:34:56")
        with pytest.raises(ValueError, match="Not a device address"):
            DeviceAddress.parse("JK_BD4A8S4P")

    def test_octet_count(self) -> None:
        """Test the address must be six bytes."""
        with pytest.raises(ValueError, match="6 bytes"):
            DeviceAddress(b"\x01\x02")


class TestDeviceSelector:
    """Test selector parsing and matching."""

    def test_parse(self) -> None:
        """Test address strings become address selectors, others name selectors."""
        assert DeviceSelector.parse("c8:47:80:12:34:56").is_address
        selector = DeviceSelector.parse("JK_")
        assert not selector.is_address
        assert str(selector) == "JK_"

    def test_exactly_one_criterion(self) -> None:
        """Test a selector needs an address or a name but not both."""
        with pytest.raises(ValueError, match="either"):
            DeviceSelector()
        with pytest.raises(ValueError, match="either"):
            DeviceSelector(address=DeviceAddress.parse("C8:47:80:12:34:56"), name="JK")

    def test_address_match_ignores_case(self) -> None:
        """Test address matching is on the parsed bytes."""
        selector = DeviceSelector.parse("C8:47:80:12:34:56")
        assert selector.matches(PeripheralHandle("c8:47:80:12:34:56"))
        assert not selector.matches(PeripheralHandle("C8:47:80:12:34:57"))

    def test_name_match_is_substring(self) -> None:
        """Test name selectors match any part of the advertised name."""
        selector = DeviceSelector.parse("BD4A")
        assert selector.matches(PeripheralHandle("C8:47:80:12:34:56", "JK_BD4A8S4P"))
        assert not selector.matches(PeripheralHandle("C8:47:80:12:34:56", None))

    def test_for_peripheral(self) -> None:
        """Test platforms that hide addresses fall back to the name."""
        handle = PeripheralHandle("6B1F3D8E-0C0A-4C1F-9B7E-2D55A4F0B1C2", "JK_BD4A8S4P")
        assert handle.mac is None
        assert DeviceSelector.for_peripheral(handle) == DeviceSelector(name="JK_BD4A8S4P")
        handle = PeripheralHandle("c8:47:80:12:34:56", "JK_BD4A8S4P")
        assert str(DeviceSelector.for_peripheral(handle)) == "C8:47:80:12:34:56"

    def test_as_selectors(self) -> None:
        """Test strings and selectors can be mixed."""
        selector = DeviceSelector(name="JK")
        assert as_selectors(["JK", selector]) == [selector, selector]


class TestDeviceLocator:
    """Test bounded scanning."""

    @pytest.mark.asyncio
    async def test_stops_when_all_selectors_match(self) -> None:
        """Test the scan ends as soon as every selector matched."""
        factory = FakeScanner.factory(
            [
                (0, PACK_A, FakeAdvertisement("JK_BD4A8S4P", -50)),
                (5, PACK_B, FakeAdvertisement("JK_B2A20S20P", -70)),
            ],
        )
        locator = DeviceLocator(JK_SERVICE_UUID, scanner_factory=factory)
        start = time.monotonic()
        found = await locator.scan(["c8:47:80:12:34:56"], scan_timeout=3)
        assert time.monotonic() - start < 1
        assert [p.address for p in found] == ["C8:47:80:12:34:56"]
        assert found[0].rssi == -50
        assert factory.built[0].stopped

    @pytest.mark.asyncio
    async def test_empty_selector_lists_everything(self) -> None:
        """Test an empty selector list waits out the window and returns all devices."""
        factory = FakeScanner.factory(
            [
                (0, PACK_A, FakeAdvertisement("JK_BD4A8S4P")),
                (0, OTHER, None),
                (0, PACK_B, FakeAdvertisement("JK_B2A20S20P")),
                (0, PACK_A, FakeAdvertisement("JK_BD4A8S4P")),
            ],
        )
        locator = DeviceLocator(scanner_factory=factory)
        found = await locator.scan([], scan_timeout=0.05)
        assert [p.name for p in found] == ["JK_BD4A8S4P", "Thermometer", "JK_B2A20S20P"]

    @pytest.mark.asyncio
    async def test_name_selector(self) -> None:
        """Test name selectors filter by substring."""
        factory = FakeScanner.factory(
            [
                (0, OTHER, FakeAdvertisement("Thermometer")),
                (0, PACK_B, FakeAdvertisement("JK_B2A20S20P")),
            ],
        )
        locator = DeviceLocator(scanner_factory=factory)
        found = await locator.scan(["B2A20"], scan_timeout=1)
        assert [p.address for p in found] == [PACK_B.address]

    @pytest.mark.asyncio
    async def test_timeout_without_match(self) -> None:
        """Test an unmatched selector yields an empty list after the window."""
        factory = FakeScanner.factory([(0, OTHER, FakeAdvertisement("Thermometer"))])
        locator = DeviceLocator(scanner_factory=factory)
        assert await locator.scan(["JK_"], scan_timeout=0.05) == []

    @pytest.mark.asyncio
    async def test_zero_timeout_uses_cache(self) -> None:
        """Test a zero timeout answers from earlier observations without scanning."""
        factory = FakeScanner.factory([(0, PACK_A, FakeAdvertisement("JK_BD4A8S4P"))])
        locator = DeviceLocator(scanner_factory=factory)
        assert await locator.scan(["JK_"], scan_timeout=0) == []
        assert factory.built == []
        await locator.scan([], scan_timeout=0.05)
        found = await locator.scan(["JK_"], scan_timeout=0)
        assert [p.address for p in found] == [PACK_A.address]
        assert len(factory.built) == 1

    @pytest.mark.asyncio
    async def test_already_matched_skips_scan(self) -> None:
        """Test selectors matched by an earlier scan are answered from the cache."""
        factory = FakeScanner.factory([(0, PACK_A, FakeAdvertisement("JK_BD4A8S4P"))])
        locator = DeviceLocator(scanner_factory=factory)
        await locator.scan([PACK_A.address], scan_timeout=1)
        await locator.scan([PACK_A.address], scan_timeout=1)
        assert len(factory.built) == 1

    @pytest.mark.asyncio
    async def test_scanner_start_failure(self) -> None:
        """Test an adapter error when starting the scan becomes a connect failure."""
        factory = FakeScanner.factory([], fail_start=BleakError("org.bluez.Error.InProgress"))
        locator = DeviceLocator(scanner_factory=factory)
        with pytest.raises(ConnectFailedError) as exc_info:
            await locator.scan(["JK_"], scan_timeout=1)
        assert exc_info.value.context["stage"] == "scan"
        assert isinstance(exc_info.value.__cause__, BleakError)

    @pytest.mark.asyncio
    async def test_scanner_arguments(self) -> None:
        """Test the service filter and adapter are passed to the scanner."""
        factory = FakeScanner.factory([])
        locator = DeviceLocator(JK_SERVICE_UUID, adapter="hci1", scanner_factory=factory)
        await locator.scan([], scan_timeout=0.01)
        kwargs = factory.built[0].kwargs
        assert kwargs["service_uuids"] == [JK_SERVICE_UUID]
        assert kwargs["adapter"] == "hci1"

    def test_latest_name_wins(self) -> None:
        """Test a renamed device keeps one entry with the newest name."""
        locator = DeviceLocator()
        locator.observe(PACK_A, FakeAdvertisement("JK_OLD"))
        locator.observe(FakeDevice(PACK_A.address.lower()), FakeAdvertisement("JK_NEW"))
        assert [p.name for p in locator.seen] == ["JK_NEW"]

    def test_name_survives_empty_advertisement(self) -> None:
        """Test an advertisement without a name keeps the known name."""
        locator = DeviceLocator()
        locator.observe(FakeDevice(PACK_A.address), FakeAdvertisement("JK_BD4A8S4P"))
        handle = locator.observe(FakeDevice(PACK_A.address), FakeAdvertisement(None))
        assert handle.name == "JK_BD4A8S4P"
