"""
JK BMS emulator for test mode.

:class:`JKDeviceEmulator` stands in for ``BleakClient`` and
:class:`EmulatedScanner` for ``BleakScanner``. Both are built by an
:class:`EmulatedBus`, whose ``client`` and ``scanner`` methods plug into the
``client_factory`` and ``scanner_factory`` hooks of the driver.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ubmsc_driver.base.codec import FrameCodec
from ubmsc_driver.base.exceptions import FrameError

from . import JK02_FRAME_FORMAT
from .constants import (
    CMD_CELL_DATA,
    CMD_DEVICE_INFO,
    DEFAULT_NOTIFY_MTU,
    HEARTBEAT,
    JK_CHARACTERISTIC_UUID,
    JK_SERVICE_UUID,
    RECORD_CELL_DATA,
    RECORD_DEVICE_INFO,
    RECORD_SETTINGS,
    RESPONSE_PAYLOAD_SIZE,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

# Payloads captured from a JK_BD4A8S4P with six cells in series
SAMPLE_DEVICE_INFO_PAYLOAD = bytes.fromhex(
    "594a4b5f4244344138533450000000000031354100000000003135"
    "2e32360000007ce3180001000000616263646566676800000000000000003132"
    "3334000000000000000000000000323430383138000034303533313331303632"
    "3900303030004a4b2d424d530000000000000000000031323334353637383900"
    "0000000000004a4b2d424d5300000000000000000000feffffff1fe905020000"
    "0000901f00000000c0d8e7f73c00000100000000000000000000df2700000000"
    "00000000000000000000df0f000000000000000000000000000003df27000000"
    "0000000000000000000009080001640000005f0000003c000000320000000000"
    "000000000000100e00003232011e0000000000000000000000000000000000fe"
    "9f699f0f00000000000000",
)
SAMPLE_CELL_DATA_PAYLOAD = bytes.fromhex(
    "22500950095009500950094f090000000000000000000000000000"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "0000000000003f0000005009000000008a0089008c008a008b008b0000000000"
    "0000000000000000000000000000000000000000000000000000000000000000"
    "00000000000000000000000000000000030100000000e2370000b70800009c00"
    "0000ee00f3000000000000000064e02e0000e02e000001000000064100006400"
    "00007c7c1700010100000000000000000000000000003f0001000000d2030200"
    "0100ad693e4000000000960500000000000103060100d8dcea00000000000301"
    "30f830f8cf03dae2cc089e0100008051010000000000000000000000000000fe"
    "ff7fdc0f01008007000000",
)

logger = logging.getLogger("ubmsc.emulator")


@dataclass
class EmulatedDevice:
    """Identity and record contents of one emulated BMS."""

    address: str
    name: str = "JK_BD4A8S4P"
    rssi: int = -60
    device_info: bytes = SAMPLE_DEVICE_INFO_PAYLOAD
    cell_data: bytes = SAMPLE_CELL_DATA_PAYLOAD


@dataclass(frozen=True)
class EmulatedCharacteristic:
    """GATT characteristic handle returned by the emulated service table."""

    uuid: str


class EmulatedServices:
    """Service collection exposing the single JK characteristic."""

    def __init__(self) -> None:
        """Initialize the service table."""
        self._characteristic = EmulatedCharacteristic(JK_CHARACTERISTIC_UUID)

    def get_characteristic(self, uuid: str) -> EmulatedCharacteristic | None:
        """Return the characteristic for ``uuid``, or None if absent."""
        if uuid.lower() == self._characteristic.uuid:
            return self._characteristic
        return None


class JKDeviceEmulator:
    """
    Fake BleakClient that answers JK02 requests.

    Requests are parsed with the device-side view of the JK02 frame format and
    answered with freshly encoded response frames, split into notification
    packets of at most ``mtu`` bytes.

    Attributes:
        written: Every byte string written to the device, in order.
        corrupt_next: Flip the checksum of the next response frame.
        unexpected_first: Precede the next response with a settings record.
        silent: Swallow requests without answering.
    """

    def __init__(
        self,
        device: EmulatedDevice,
        *,
        disconnected_callback: Callable[[Any], None] | None = None,
        mtu: int = DEFAULT_NOTIFY_MTU,
        response_delay: float = 0.01,
        **_kwargs: Any,
    ) -> None:
        """
        Initialize the emulator.

        Args:
            device: The emulated device.
            disconnected_callback: Called with the client when the link drops.
            mtu: Maximum notification size in bytes.
            response_delay: Simulated device processing time in seconds.
        """
        self.device = device
        self.address = device.address
        self.mtu = mtu
        self.response_delay = response_delay
        self.services = EmulatedServices()
        self.is_connected = False
        self.written: list[bytes] = []
        self.corrupt_next = False
        self.unexpected_first = False
        self.silent = False
        self._disconnected_callback = disconnected_callback
        self._codec = FrameCodec(JK02_FRAME_FORMAT.peer(), logger)
        self._callbacks: dict[str, Callable[[Any, bytearray], None]] = {}
        self._counter = 0
        self._tasks: set[asyncio.Task] = set()

    async def connect(self) -> bool:
        """Mock connect method."""
        await asyncio.sleep(0)
        self.is_connected = True
        logger.debug("Emulated device %s connected", self.address)
        return True

    async def disconnect(self) -> bool:
        """Mock disconnect method."""
        self.is_connected = False
        self._callbacks.clear()
        for task in list(self._tasks):
            task.cancel()
        return True

    async def start_notify(self, characteristic: Any, callback: Callable[[Any, bytearray], None]) -> None:
        """Register a notification callback."""
        if not self.is_connected:
            raise BleakError("Not connected")
        self._callbacks[_uuid_of(characteristic)] = callback

    async def stop_notify(self, characteristic: Any) -> None:
        """Remove a notification callback."""
        if not self.is_connected:
            raise BleakError("Not connected")
        self._callbacks.pop(_uuid_of(characteristic), None)

    async def write_gatt_char(self, characteristic: Any, data: bytes, response: bool = False) -> None:  # noqa: ARG002, FBT001, FBT002
        """Accept a request frame and schedule the device's answer."""
        if not self.is_connected:
            raise BleakError("Not connected")
        data = bytes(data)
        self.written.append(data)
        try:
            request = self._codec.decode(data)
        except FrameError as exc:
            logger.debug("Emulated device %s ignored invalid request: %s", self.address, exc)
            return
        if self.silent:
            logger.debug("Emulated device %s staying silent", self.address)
            return

        packets = self._answer(request.command)
        if not packets:
            logger.debug("Emulated device %s has no answer to 0x%02x", self.address, request.command)
            return
        task = asyncio.get_running_loop().create_task(self._deliver(_uuid_of(characteristic), packets))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def drop_connection(self) -> None:
        """Simulate the device going out of range."""
        self.is_connected = False
        self._callbacks.clear()
        if self._disconnected_callback is not None:
            self._disconnected_callback(self)

    def _record(self, record_type: int, data: bytes) -> bytes:
        self._counter = (self._counter + 1) & 0xFF
        payload = bytes([self._counter]) + bytes(data[1:RESPONSE_PAYLOAD_SIZE])
        frame = bytearray(self._codec.encode(record_type, payload))
        if self.corrupt_next:
            self.corrupt_next = False
            frame[-1] ^= 0xFF
        return bytes(frame)

    def _answer(self, command: int) -> list[bytes]:
        if command == CMD_DEVICE_INFO:
            record = self._record(RECORD_DEVICE_INFO, self.device.device_info)
            packets = [record]
        elif command == CMD_CELL_DATA:
            record = self._record(RECORD_CELL_DATA, self.device.cell_data)
            packets = [HEARTBEAT, *self._split(record)]
        else:
            return []
        if self.unexpected_first:
            self.unexpected_first = False
            packets = [*self._split(self._record(RECORD_SETTINGS, bytes(RESPONSE_PAYLOAD_SIZE))), *packets]
        return packets

    def _split(self, frame: bytes) -> list[bytes]:
        return [frame[i : i + self.mtu] for i in range(0, len(frame), self.mtu)]

    async def _deliver(self, uuid: str, packets: list[bytes]) -> None:
        await asyncio.sleep(self.response_delay)
        for packet in packets:
            callback = self._callbacks.get(uuid)
            if callback is None or not self.is_connected:
                return
            callback(uuid, bytearray(packet))
            await asyncio.sleep(0)


class EmulatedScanner:
    """Fake BleakScanner that advertises every device of an EmulatedBus."""

    def __init__(
        self,
        devices: Iterable[EmulatedDevice],
        *,
        detection_callback: Callable[[Any, AdvertisementData], None] | None = None,
        service_uuids: list[str] | None = None,
        **_kwargs: Any,
    ) -> None:
        """Initialize the scanner over a set of emulated devices."""
        self.devices = list(devices)
        self.detection_callback = detection_callback
        self.service_uuids = service_uuids

    async def __aenter__(self) -> EmulatedScanner:
        """Start scanning and report each device once."""
        if self.service_uuids and JK_SERVICE_UUID not in self.service_uuids:
            return self
        for device in self.devices:
            await asyncio.sleep(0)
            if self.detection_callback is not None:
                self.detection_callback(device, _advertisement(device))
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Stop scanning."""


class EmulatedBus:
    """A set of emulated devices shared by scanners and clients."""

    def __init__(self, devices: Iterable[EmulatedDevice] = (), **client_options: Any) -> None:
        """
        Initialize the bus.

        Args:
            devices: Devices to emulate.
            **client_options: Extra keyword arguments for every JKDeviceEmulator.
        """
        self.devices = {d.address.upper(): d for d in devices}
        self.client_options = client_options
        self.clients: dict[str, JKDeviceEmulator] = {}

    @classmethod
    def default(cls) -> EmulatedBus:
        """Return a bus with a single sample device."""
        return cls([EmulatedDevice("C8:47:80:00:00:01")])

    def scanner(self, **kwargs: Any) -> EmulatedScanner:
        """Build a scanner; signature matches the ``scanner_factory`` hook."""
        return EmulatedScanner(self.devices.values(), **kwargs)

    def client(self, address_or_device: Any, **kwargs: Any) -> JKDeviceEmulator:
        """
        Build an emulator; signature matches the ``client_factory`` hook.

        Raises:
            BleakError: If no device with that address is emulated.
        """
        address = getattr(address_or_device, "address", address_or_device)
        device = self.devices.get(str(address).upper())
        if device is None:
            raise BleakError(f"Device with address {address} was not found")
        emulator = JKDeviceEmulator(device, **{**self.client_options, **kwargs})
        self.clients[device.address.upper()] = emulator
        return emulator


def _uuid_of(characteristic: Any) -> str:
    return str(getattr(characteristic, "uuid", characteristic)).lower()


def _advertisement(device: EmulatedDevice) -> AdvertisementData:
    return AdvertisementData(
        local_name=device.name,
        manufacturer_data={},
        service_data={},
        service_uuids=[JK_SERVICE_UUID],
        tx_power=None,
        rssi=device.rssi,
        platform_data=(),
    )


__all__ = [
    "SAMPLE_CELL_DATA_PAYLOAD",
    "SAMPLE_DEVICE_INFO_PAYLOAD",
    "EmulatedBus",
    "EmulatedDevice",
    "EmulatedScanner",
    "JKDeviceEmulator",
]
