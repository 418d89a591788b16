"""High-level BMS client: find, connect, query and close."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ubmsc_driver.base.discovery import DeviceLocator, DeviceSelector, as_selectors
from ubmsc_driver.base.exceptions import (
    ConnectionLostError,
    DeviceNotFoundError,
    ScanTimeoutError,
    SessionClosedError,
)
from ubmsc_driver.base.protocol import ProtocolClient
from ubmsc_driver.base.session import DEFAULT_CONNECT_TIMEOUT, LinkSession
from ubmsc_driver.jk import JK02_32S
from ubmsc_driver.jk.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_SCAN_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ubmsc_driver.base.discovery import PeripheralHandle
    from ubmsc_driver.base.family import DeviceFamily
    from ubmsc_driver.base.records import CellData, DeviceInfo


@dataclass
class ClientOptions:
    """Timeouts (seconds) and adapter selection for a client."""

    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    adapter: str | None = None


class BMSClient:
    """
    Client for one BMS device.

    Binds a DeviceLocator, a LinkSession, a ProtocolClient and the family's
    RecordDecoder behind ``open``, ``device_info``, ``cell_data`` and ``close``.
    Any query on a client that is not open fails immediately.
    """

    def __init__(
        self,
        selector: DeviceSelector | str,
        options: ClientOptions | None = None,
        family: DeviceFamily = JK02_32S,
        *,
        locator: DeviceLocator | None = None,
        client_factory: Callable[..., Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize the client; no I/O happens until :meth:`open`.

        Args:
            selector: Address or name of the device.
            options: Timeouts and adapter; defaults apply when omitted.
            family: Device family description.
            locator: Shared locator; a private one is created when omitted.
            client_factory: BLE client factory passed to the link session.
            logger: Optional logger instance.
        """
        self.selector = as_selectors([selector])[0]
        self.options = options or ClientOptions()
        self.family = family
        self.logger = logger or logging.getLogger("ubmsc.client")
        self.locator = locator or DeviceLocator(
            family.roles.service_uuid,
            adapter=self.options.adapter,
        )
        self._client_factory = client_factory
        self._decoder = family.decoder()
        self._session: LinkSession | None = None
        self._protocol: ProtocolClient | None = None
        self.peripheral: PeripheralHandle | None = None

    @classmethod
    async def find(
        cls,
        selectors: Iterable[DeviceSelector | str] = (),
        options: ClientOptions | None = None,
        family: DeviceFamily = JK02_32S,
        *,
        locator: DeviceLocator | None = None,
    ) -> list[DeviceSelector]:
        """
        Scan and return a selector for every matching device.

        Args:
            selectors: Addresses or names to look for; empty means all devices.
            options: Supplies the scan timeout and adapter.
            family: Device family whose service UUID filters the scan.
            locator: Shared locator; a private one is created when omitted.

        Returns:
            Address selectors (name selectors where the platform hides addresses).
        """
        options = options or ClientOptions()
        locator = locator or DeviceLocator(family.roles.service_uuid, adapter=options.adapter)
        found = await locator.scan(selectors, options.scan_timeout)
        return [DeviceSelector.for_peripheral(p) for p in found]

    @property
    def device_id(self) -> str:
        """Return the label identifying this device."""
        return str(self.selector)

    @property
    def is_open(self) -> bool:
        """Return True if the client has a usable session."""
        return self._session is not None and self._session.is_open

    async def open(self) -> None:
        """
        Locate the device and establish a session.

        Raises:
            ScanTimeoutError: If the scan window elapsed without a match.
            DeviceNotFoundError: If a zero-timeout lookup found nothing.
            ConnectFailedError: If the connection could not be set up.
        """
        if self.is_open:
            return
        await self._teardown()

        scan_timeout = self.options.scan_timeout
        found = await self.locator.scan([self.selector], scan_timeout)
        if not found:
            if scan_timeout > 0:
                raise ScanTimeoutError(
                    f"No device matching '{self.selector}' within {scan_timeout}s",
                    selector=self.device_id,
                    scan_timeout=scan_timeout,
                )
            raise DeviceNotFoundError(
                f"No device matching '{self.selector}' has been seen",
                selector=self.device_id,
                scan_timeout=scan_timeout,
            )

        self.peripheral = found[0]
        self.logger.info(
            "Opening %s (%s, %s)",
            self.device_id,
            self.peripheral.address,
            self.peripheral.name,
        )
        self._session = await LinkSession.connect(
            self.peripheral,
            self.family.roles,
            timeout=self.options.connect_timeout,
            adapter=self.options.adapter,
            client_factory=self._client_factory,
        )
        self._protocol = ProtocolClient(
            self._session,
            self.family.frame_format,
            request_timeout=self.options.request_timeout,
            response_commands=self.family.response_commands,
        )

    def _require_open(self, operation: str) -> ProtocolClient:
        if self._protocol is None or self._session is None or not self._session.is_open:
            raise SessionClosedError(
                f"Client for '{self.device_id}' is not open",
                self.peripheral.address if self.peripheral else None,
                operation=operation,
            )
        return self._protocol

    async def device_info(self) -> DeviceInfo:
        """
        Request and decode the device info record.

        Raises:
            SessionClosedError: If the client is not open.
            ProtocolTimeoutError: If the device does not answer in time.
            DecodeError: If the payload cannot be decoded.
        """
        protocol = self._require_open("device_info")
        try:
            frame = await protocol.request(self.family.device_info_command)
        except ConnectionLostError:
            await self._teardown()
            raise
        return self._decoder.decode_device_info(frame.payload)

    async def cell_data(self) -> CellData:
        """
        Request and decode the cell data record.

        Raises:
            SessionClosedError: If the client is not open.
            ProtocolTimeoutError: If the device does not answer in time.
            DecodeError: If the payload cannot be decoded.
        """
        protocol = self._require_open("cell_data")
        try:
            frame = await protocol.request(self.family.cell_data_command)
        except ConnectionLostError:
            await self._teardown()
            raise
        return self._decoder.decode_cell_data(frame.payload)

    async def _teardown(self) -> None:
        protocol, session = self._protocol, self._session
        self._protocol = None
        self._session = None
        if protocol is not None:
            protocol.close()
        if session is not None:
            await session.close()

    async def close(self) -> None:
        """Close the session; calling it again does nothing."""
        if self._session is not None:
            self.logger.info("Closing %s", self.device_id)
        await self._teardown()

    async def __aenter__(self) -> BMSClient:
        """Open the client."""
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close the client."""
        await self.close()
