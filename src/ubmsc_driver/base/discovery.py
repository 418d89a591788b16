"""BLE device discovery and selector matching for BMS devices."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from bleak import BleakScanner
from bleak.exc import BleakError

from .exceptions import ConnectFailedError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData

ADDRESS_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}([:-])(?:[0-9A-Fa-f]{2}\1){4}[0-9A-Fa-f]{2}$")
ADDRESS_SIZE = 6

# BlueZ rejects overlapping scans with "Operation already in progress", so
# every locator running on an event loop shares one scan slot.
_scan_semaphores: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore] = (
    weakref.WeakKeyDictionary()
)


def get_ble_scan_semaphore() -> asyncio.Semaphore:
    """Get or create the BLE scan coordination semaphore of the running loop."""
    loop = asyncio.get_running_loop()
    semaphore = _scan_semaphores.get(loop)
    if semaphore is None:
        semaphore = _scan_semaphores[loop] = asyncio.Semaphore(1)
    return semaphore


@dataclass(frozen=True)
class DeviceAddress:
    """A 6-byte link-layer address."""

    octets: bytes

    def __post_init__(self) -> None:
        """Validate the address length."""
        if len(self.octets) != ADDRESS_SIZE:
            raise ValueError(f"Device address must be {ADDRESS_SIZE} bytes")

    @staticmethod
    def is_address(text: str) -> bool:
        """Return True if ``text`` is a colon- or dash-separated MAC address."""
        return bool(ADDRESS_PATTERN.match(text.strip()))

    @classmethod
    def parse(cls, text: str) -> DeviceAddress:
        """
        Parse a MAC address string.

        Raises:
            ValueError: If the text is not a MAC address.
        """
        text = text.strip()
        if not cls.is_address(text):
            raise ValueError(f"Not a device address: {text!r}")
        return cls(bytes.fromhex(text.replace(":", "").replace("-", "")))

    def __str__(self) -> str:
        """Return the address in upper-case colon-hex form."""
        return ":".join(f"{b:02X}" for b in self.octets)


@dataclass(frozen=True)
class PeripheralHandle:
    """A device as last seen by the scanner."""

    address: str
    name: str | None = None
    rssi: int | None = None
    device: Any = None

    @property
    def mac(self) -> DeviceAddress | None:
        """Return the parsed MAC address, or None where the platform hides it."""
        if DeviceAddress.is_address(self.address):
            return DeviceAddress.parse(self.address)
        return None


@dataclass(frozen=True)
class DeviceSelector:
    """Identify a device by address or by advertised name."""

    address: DeviceAddress | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        """Require exactly one of address and name."""
        if (self.address is None) == (self.name is None):
            raise ValueError("A selector needs either an address or a name")

    @classmethod
    def parse(cls, text: str) -> DeviceSelector:
        """Build an address selector for MAC strings, a name selector otherwise."""
        if DeviceAddress.is_address(text):
            return cls(address=DeviceAddress.parse(text))
        return cls(name=text)

    @classmethod
    def for_peripheral(cls, peripheral: PeripheralHandle) -> DeviceSelector:
        """Return the most specific selector for a scanned peripheral."""
        mac = peripheral.mac
        if mac is not None:
            return cls(address=mac)
        return cls(name=peripheral.name or peripheral.address)

    @property
    def is_address(self) -> bool:
        """Return True for address selectors."""
        return self.address is not None

    def matches(self, peripheral: PeripheralHandle) -> bool:
        """Return True if the peripheral satisfies this selector."""
        if self.address is not None:
            return peripheral.mac == self.address
        return bool(peripheral.name) and self.name in peripheral.name  # type: ignore[operator]

    def __str__(self) -> str:
        """Return the selector text."""
        return str(self.address) if self.address is not None else str(self.name)


def as_selectors(selectors: Iterable[DeviceSelector | str]) -> list[DeviceSelector]:
    """Normalize strings and selectors into a list of selectors."""
    return [s if isinstance(s, DeviceSelector) else DeviceSelector.parse(s) for s in selectors]


class DeviceLocator:
    """Bounded BLE scan that filters advertisements by selector."""

    def __init__(
        self,
        service_uuid: str | None = None,
        *,
        adapter: str | None = None,
        scanner_factory: Callable[..., Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize the locator.

        Args:
            service_uuid: Only report devices advertising this service.
            adapter: Optional Bluetooth adapter name (e.g. 'hci0').
            scanner_factory: Callable building the scanner (defaults to BleakScanner).
            logger: Optional logger instance.
        """
        self.service_uuid = service_uuid
        self.adapter = adapter
        self._scanner_factory = scanner_factory or BleakScanner
        self.logger = logger or logging.getLogger("ubmsc.discovery")
        self._seen: dict[str, PeripheralHandle] = {}

    @property
    def seen(self) -> list[PeripheralHandle]:
        """Return every peripheral observed so far, in discovery order."""
        return list(self._seen.values())

    def observe(self, device: BLEDevice, advertisement: AdvertisementData | None) -> PeripheralHandle:
        """Record an advertisement; the most recent name for an address wins."""
        key = device.address.upper()
        previous = self._seen.get(key)
        name = (
            getattr(advertisement, "local_name", None)
            or getattr(device, "name", None)
            or (previous.name if previous else None)
        )
        handle = PeripheralHandle(
            address=device.address,
            name=name,
            rssi=getattr(advertisement, "rssi", None),
            device=device,
        )
        if previous is not None and previous.name != name:
            self.logger.debug("Device %s renamed from %r to %r", key, previous.name, name)
        self._seen[key] = handle
        return handle

    def matching(self, selectors: Iterable[DeviceSelector | str]) -> list[PeripheralHandle]:
        """
        Return observed peripherals matching any selector, in discovery order.

        An empty selector list matches every observed peripheral.
        """
        wanted = as_selectors(selectors)
        if not wanted:
            return self.seen
        return [p for p in self._seen.values() if any(s.matches(p) for s in wanted)]

    def _all_matched(self, selectors: list[DeviceSelector]) -> bool:
        return bool(selectors) and all(
            any(s.matches(p) for p in self._seen.values()) for s in selectors
        )

    async def scan(
        self,
        selectors: Iterable[DeviceSelector | str] = (),
        scan_timeout: float = 30.0,
    ) -> list[PeripheralHandle]:
        """
        Scan for peripherals.

        The scan stops when the timeout elapses or, with a non-empty selector
        list, as soon as every selector has matched at least once. A timeout of
        zero returns what has already been observed without scanning.

        Args:
            selectors: Addresses or names to look for; empty means all devices.
            scan_timeout: Scan window in seconds.

        Returns:
            Matching peripherals, deduplicated by address, in discovery order.

        Raises:
            ConnectFailedError: If the scanner cannot be started, for example
                because the adapter is off or another scan is running.
        """
        wanted = as_selectors(selectors)
        if scan_timeout <= 0 or self._all_matched(wanted):
            return self.matching(wanted)

        done = asyncio.Event()

        def on_advertisement(device: BLEDevice, advertisement: AdvertisementData) -> None:
            handle = self.observe(device, advertisement)
            self.logger.debug("Observed %s (%s) rssi=%s", handle.address, handle.name, handle.rssi)
            if self._all_matched(wanted):
                done.set()

        kwargs: dict[str, Any] = {"detection_callback": on_advertisement}
        if self.service_uuid:
            kwargs["service_uuids"] = [self.service_uuid]
        if self.adapter:
            kwargs["adapter"] = self.adapter

        self.logger.info(
            "Scanning for %s (timeout %.1fs)",
            ", ".join(str(s) for s in wanted) or "all devices",
            scan_timeout,
        )
        try:
            async with get_ble_scan_semaphore():
                scanner = self._scanner_factory(**kwargs)
                async with scanner:
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(done.wait(), timeout=scan_timeout)
        except (BleakError, OSError) as exc:
            self.logger.warning("Scan failed: %s", exc)
            raise ConnectFailedError(f"Scan failed: {exc}", stage="scan") from exc

        found = self.matching(wanted)
        self.logger.info("Scan finished: %d matching device(s)", len(found))
        return found
