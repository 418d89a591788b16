"""BLE link session: one connection, one write endpoint, one notification stream."""

from __future__ import annotations

import asyncio
import logging
import warnings
import weakref
from typing import TYPE_CHECKING, Any

from bleak import BleakClient
from bleak.exc import BleakError

from .exceptions import ConnectFailedError, ConnectionLostError, SessionClosedError
from .state import SessionState, StateManager

if TYPE_CHECKING:
    from collections.abc import Callable

    from .discovery import PeripheralHandle
    from .family import GattRoles

DEFAULT_CONNECT_TIMEOUT = 10.0
NOTIFICATION_QUEUE_SIZE = 256

# Marks the end of the notification stream
_END = object()

# Links of sessions garbage-collected while open are released in these tasks
_orphan_closes: set[asyncio.Task] = set()


def _weak_callback(method: Callable[..., None]) -> Callable[..., None]:
    """
    Wrap a bound method so that holding the wrapper does not keep its object alive.

    BLE backends may keep callbacks in process-wide registries for as long as
    the link is up (BlueZ does), which would otherwise pin a dropped session.
    """
    ref = weakref.WeakMethod(method)

    def callback(*args: Any) -> None:
        bound = ref()
        if bound is not None:
            bound(*args)

    return callback


async def _release_link(client: Any, characteristic: Any, address: str, logger: logging.Logger) -> None:
    """Unsubscribe and disconnect, logging teardown failures."""
    if not getattr(client, "is_connected", False):
        return
    try:
        await client.stop_notify(characteristic)
    except (BleakError, OSError) as exc:
        logger.warning("Failed to stop notifications on %s: %s", address, exc)
    try:
        await client.disconnect()
    except (BleakError, OSError) as exc:
        logger.warning("Failed to disconnect from %s: %s", address, exc)


def _release_orphan(client: Any, characteristic: Any, address: str, logger: logging.Logger) -> None:
    """Release the link of a session collected without close()."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        warnings.warn(f"Unclosed BLE session with {address}", ResourceWarning, stacklevel=1)
        return
    logger.warning("Session with %s dropped without close(); releasing the link", address)
    task = loop.create_task(_release_link(client, characteristic, address, logger))
    _orphan_closes.add(task)
    task.add_done_callback(_orphan_closes.discard)


class NotificationStream:
    """
    Ordered, single-consumer view of the packets a session receives.

    Iteration ends when the session closes; it raises ConnectionLostError when
    the transport dropped the link instead.
    """

    def __init__(self, session: LinkSession, queue: asyncio.Queue) -> None:
        """Initialize the stream over the session's packet queue."""
        self._session = session
        self._queue = queue

    def __aiter__(self) -> NotificationStream:
        """Return the stream itself; it cannot be restarted."""
        return self

    async def __anext__(self) -> bytes:
        """Wait for the next packet."""
        packet = await self._queue.get()
        if packet is _END:
            # Leave the marker for any later reader
            self._queue.put_nowait(_END)
            if self._session.lost:
                raise ConnectionLostError(
                    "Connection lost while waiting for notifications",
                    self._session.address,
                )
            raise StopAsyncIteration
        return packet

    def drain(self) -> int:
        """Discard packets already queued and return how many were dropped."""
        dropped = 0
        while not self._queue.empty():
            packet = self._queue.get_nowait()
            if packet is _END:
                self._queue.put_nowait(_END)
                break
            dropped += 1
        return dropped


class LinkSession:
    """Owns one BLE connection to a single peripheral."""

    def __init__(
        self,
        roles: GattRoles,
        address: str,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize an unconnected session; use :meth:`connect` instead.

        Args:
            roles: Service and characteristic identifiers.
            address: Peripheral address, used for logs and errors.
            logger: Optional logger instance.
        """
        self.roles = roles
        self.address = address
        self.logger = logger or logging.getLogger("ubmsc.session")
        self.state_manager: StateManager[SessionState] = StateManager(SessionState.DISCONNECTED)
        self._client: Any = None
        self._write_char: Any = None
        self._notify_char: Any = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=NOTIFICATION_QUEUE_SIZE)
        self._stream: NotificationStream | None = None
        self._closed = False
        self._lost = False
        self._finalizer: weakref.finalize | None = None

    @classmethod
    async def connect(
        cls,
        peripheral: PeripheralHandle,
        roles: GattRoles,
        *,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
        adapter: str | None = None,
        client_factory: Callable[..., Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> LinkSession:
        """
        Connect to a peripheral, resolve its characteristics and subscribe.

        Args:
            peripheral: The scanned device.
            roles: Service and characteristic identifiers.
            timeout: Connection timeout in seconds.
            adapter: Optional Bluetooth adapter name.
            client_factory: Callable building the BLE client (defaults to BleakClient).
            logger: Optional logger instance.

        Returns:
            A connected, subscribed session.

        Raises:
            ConnectFailedError: If any step fails.
        """
        session = cls(roles, peripheral.address, logger)
        await session._open(peripheral, timeout, adapter, client_factory or BleakClient)
        return session

    async def _open(
        self,
        peripheral: PeripheralHandle,
        timeout: float,
        adapter: str | None,
        client_factory: Callable[..., Any],
    ) -> None:
        await self.state_manager.set_state(SessionState.CONNECTING)
        kwargs: dict[str, Any] = {
            "disconnected_callback": _weak_callback(self._on_disconnect),
            "timeout": timeout,
        }
        if adapter:
            kwargs["adapter"] = adapter
        self.logger.info("Connecting to %s", self.address)
        try:
            self._client = client_factory(peripheral.device or peripheral.address, **kwargs)
            await self._client.connect()
        except (BleakError, TimeoutError, OSError) as exc:
            await self._fail()
            raise ConnectFailedError(
                f"Failed to connect: {exc}",
                self.address,
                stage="connect",
            ) from exc

        try:
            self._write_char = self._resolve(self.roles.write_uuid)
            self._notify_char = self._resolve(self.roles.notify_uuid)
            await self._client.start_notify(self._notify_char, _weak_callback(self._on_notification))
        except ConnectFailedError:
            await self._fail()
            raise
        except (BleakError, OSError) as exc:
            await self._fail()
            raise ConnectFailedError(
                f"Failed to subscribe to notifications: {exc}",
                self.address,
                stage="subscribe",
                characteristic_uuid=self.roles.notify_uuid,
            ) from exc

        self._finalizer = weakref.finalize(
            self, _release_orphan, self._client, self._notify_char, self.address, self.logger
        )
        self._finalizer.atexit = False
        await self.state_manager.set_state(SessionState.CONNECTED)
        self.logger.info("Connected to %s", self.address)

    def _resolve(self, uuid: str) -> Any:
        try:
            characteristic = self._client.services.get_characteristic(uuid)
        except BleakError as exc:
            raise ConnectFailedError(
                f"Service discovery failed: {exc}",
                self.address,
                stage="discover",
                characteristic_uuid=uuid,
            ) from exc
        if characteristic is None:
            raise ConnectFailedError(
                f"Characteristic {uuid} not found",
                self.address,
                stage="discover",
                characteristic_uuid=uuid,
            )
        return characteristic

    async def _fail(self) -> None:
        """Tear down a half-open connection after a failed connect."""
        self._closed = True
        if self._client is not None:
            try:
                await self._client.disconnect()
            except (BleakError, OSError) as exc:
                self.logger.warning("Failed to disconnect from %s: %s", self.address, exc)
        self._put(_END)
        await self.state_manager.set_state(SessionState.CLOSED)

    @property
    def is_open(self) -> bool:
        """Return True while the session can send and receive."""
        return not self._closed and not self._lost and self._client is not None

    @property
    def lost(self) -> bool:
        """Return True if the transport reported a disconnection."""
        return self._lost

    @property
    def state(self) -> SessionState:
        """Return the current session state."""
        return self.state_manager.state

    def _put(self, item: object) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.logger.debug("Notification queue full for %s; dropped oldest packet", self.address)
        self._queue.put_nowait(item)

    def _on_notification(self, _sender: Any, data: bytearray) -> None:
        if self._closed or self._lost:
            return
        self._put(bytes(data))

    def _on_disconnect(self, _client: Any) -> None:
        if self._closed or self._lost:
            return
        self.logger.warning("Device %s disconnected", self.address)
        self._lost = True
        self._put(_END)
        self.state_manager.set_state_nowait(SessionState.LOST)

    async def send(self, data: bytes) -> None:
        """
        Write bytes to the write characteristic.

        Raises:
            SessionClosedError: If the session is closed.
            ConnectionLostError: If the link is down.
            ConnectFailedError: If the transport rejected the write.
        """
        if self._lost:
            raise ConnectionLostError("Connection lost", self.address)
        if not self.is_open:
            raise SessionClosedError("Session is closed", self.address, operation="send")
        try:
            await self._client.write_gatt_char(self._write_char, data, response=False)
        except (BleakError, OSError) as exc:
            if not getattr(self._client, "is_connected", False):
                raise ConnectionLostError(f"Write failed: {exc}", self.address) from exc
            raise ConnectFailedError(
                f"Write failed: {exc}",
                self.address,
                stage="write",
                characteristic_uuid=self.roles.write_uuid,
            ) from exc
        self.logger.debug("Sent %d bytes to %s: %s", len(data), self.address, data.hex())

    def notifications(self) -> NotificationStream:
        """
        Return the session's notification stream.

        Raises:
            RuntimeError: If the stream was already taken.
        """
        if self._stream is not None:
            raise RuntimeError("Notification stream already taken")
        self._stream = NotificationStream(self, self._queue)
        return self._stream

    async def close(self) -> None:
        """Unsubscribe and disconnect; calling it again does nothing."""
        if self._closed:
            return
        self._closed = True
        await self.state_manager.set_state(SessionState.CLOSING)
        if self._finalizer is not None:
            self._finalizer.detach()
        await _release_link(self._client, self._notify_char, self.address, self.logger)
        self._put(_END)
        await self.state_manager.set_state(SessionState.CLOSED)
        self.logger.info("Closed session with %s", self.address)

    async def __aenter__(self) -> LinkSession:
        """Return the connected session."""
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close the session."""
        await self.close()
