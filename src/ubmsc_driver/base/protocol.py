"""
Request/response orchestration over a link session.

One request is on the wire at a time. Callers that arrive while a request is
outstanding wait in a first-come-first-served queue, so concurrent callers are
never interleaved at the byte level.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from .codec import FrameCodec, Rejected
from .exceptions import (
    BMSError,
    ConnectionLostError,
    ProtocolTimeoutError,
    RequestCancelledError,
    SessionClosedError,
    UnexpectedResponseError,
)
from .state import StateManager

if TYPE_CHECKING:
    from .codec import Frame, FrameFormat
    from .session import LinkSession

DEFAULT_REQUEST_TIMEOUT = 5.0


class ProtocolState(Enum):
    """States of the request state machine."""

    IDLE = auto()
    SENDING = auto()
    AWAITING_RESPONSE = auto()
    COMPLETED = auto()
    TIMED_OUT = auto()
    REJECTED = auto()


@dataclass
class PendingRequest:
    """One outstanding command and its private reassembly buffer."""

    command: int
    expect: int
    codec: FrameCodec
    timeout: float
    deadline: float | None = None
    last_rejection: Rejected | None = None
    turn: asyncio.Future | None = field(default=None, repr=False)
    response: asyncio.Task | None = field(default=None, repr=False)
    cancelled: bool = False


class ProtocolClient:
    """Serializes request/response cycles over one LinkSession."""

    def __init__(
        self,
        session: LinkSession,
        frame_format: FrameFormat,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        response_commands: dict[int, int] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize the protocol client.

        Args:
            session: Connected link session; its notification stream is taken.
            frame_format: Wire format of the device family.
            request_timeout: Default per-request deadline in seconds.
            response_commands: Request command to expected response command.
            logger: Optional logger instance.
        """
        self.session = session
        self.frame_format = frame_format
        self.request_timeout = request_timeout
        self.response_commands = response_commands or {}
        self.logger = logger or logging.getLogger("ubmsc.protocol")
        self.state_manager: StateManager[ProtocolState] = StateManager(ProtocolState.IDLE)
        self._stream = session.notifications()
        self._active: PendingRequest | None = None
        self._waiting: deque[PendingRequest] = deque()
        self._closed = False

    @property
    def state(self) -> ProtocolState:
        """Return the current state."""
        return self.state_manager.state

    @property
    def queue_depth(self) -> int:
        """Return the number of requests waiting behind the active one."""
        return len(self._waiting)

    @property
    def active(self) -> PendingRequest | None:
        """Return the request currently on the wire, if any."""
        return self._active

    async def request(
        self,
        command: int,
        payload: bytes = b"",
        *,
        expect: int | None = None,
        timeout: float | None = None,
    ) -> Frame:
        """
        Send a command and wait for its response frame.

        Args:
            command: Request command id.
            payload: Request payload bytes.
            expect: Response command id; defaults to the family mapping.
            timeout: Deadline in seconds; defaults to the client's request timeout.

        Returns:
            The validated response frame.

        Raises:
            SessionClosedError: If the client or session is already closed.
            ProtocolTimeoutError: If no matching response arrives in time.
            RequestCancelledError: If the session closes while the request waits.
            ConnectionLostError: If the transport disconnects.
        """
        if self._closed or not self.session.is_open:
            raise SessionClosedError(
                "Protocol client is closed",
                self.session.address,
                operation=f"request 0x{command:02x}",
            )
        pending = PendingRequest(
            command=command,
            expect=self.response_commands.get(command, command) if expect is None else expect,
            codec=FrameCodec(self.frame_format, self.logger),
            timeout=self.request_timeout if timeout is None else timeout,
        )
        await self._acquire(pending)
        try:
            return await self._execute(pending, payload)
        finally:
            self._release(pending)
            await self.state_manager.set_state(ProtocolState.IDLE)

    async def _acquire(self, pending: PendingRequest) -> None:
        """Wait until ``pending`` is at the head of the queue."""
        if self._active is None and not self._waiting:
            self._active = pending
            return
        pending.turn = asyncio.get_running_loop().create_future()
        self._waiting.append(pending)
        self.logger.debug(
            "Request 0x%02x queued behind %d request(s)",
            pending.command,
            len(self._waiting),
        )
        try:
            await pending.turn
        except BaseException:
            with contextlib.suppress(ValueError):
                self._waiting.remove(pending)
            if self._active is pending:
                self._release(pending)
            raise

    def _release(self, pending: PendingRequest) -> None:
        """Retire ``pending`` and hand the wire to the next waiter."""
        if self._active is not pending:
            return
        self._active = None
        while self._waiting:
            waiter = self._waiting.popleft()
            if waiter.turn is not None and not waiter.turn.done():
                self._active = waiter
                waiter.turn.set_result(None)
                return

    async def _execute(self, pending: PendingRequest, payload: bytes) -> Frame:
        if not self.session.is_open:
            await self.state_manager.set_state(ProtocolState.REJECTED)
            if self.session.lost:
                raise ConnectionLostError("Connection lost", self.session.address, pending.command)
            raise RequestCancelledError(
                "Session closed before the request was sent",
                self.session.address,
                pending.command,
            )

        await self.state_manager.set_state(ProtocolState.SENDING)
        stale = self._stream.drain()
        if stale:
            self.logger.debug("Discarded %d stale packet(s) before request", stale)
        frame_bytes = pending.codec.encode(pending.command, payload)
        try:
            await self.session.send(frame_bytes)
        except BMSError:
            await self.state_manager.set_state(ProtocolState.REJECTED)
            raise

        if pending.cancelled:
            await self.state_manager.set_state(ProtocolState.REJECTED)
            raise self._cancelled_error(pending)

        loop = asyncio.get_running_loop()
        pending.deadline = loop.time() + pending.timeout
        await self.state_manager.set_state(ProtocolState.AWAITING_RESPONSE)
        pending.response = loop.create_task(self._await_response(pending))
        try:
            async with asyncio.timeout_at(pending.deadline):
                frame = await pending.response
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not pending.cancelled or (current is not None and current.cancelling()):
                raise
            await self.state_manager.set_state(ProtocolState.REJECTED)
            raise self._cancelled_error(pending) from None
        except TimeoutError as exc:
            await self.state_manager.set_state(ProtocolState.TIMED_OUT)
            self.logger.warning(
                "Request 0x%02x to %s timed out after %.1fs",
                pending.command,
                self.session.address,
                pending.timeout,
            )
            error = ProtocolTimeoutError(
                f"No response to command 0x{pending.command:02x} within {pending.timeout}s",
                self.session.address,
                command=pending.command,
                timeout_duration=pending.timeout,
            )
            if pending.last_rejection is not None:
                raise error from pending.last_rejection.to_error(self.session.address)
            raise error from exc
        except RequestCancelledError:
            await self.state_manager.set_state(ProtocolState.REJECTED)
            raise
        await self.state_manager.set_state(ProtocolState.COMPLETED)
        return frame

    async def _await_response(self, pending: PendingRequest) -> Frame:
        async for packet in self._stream:
            for outcome in pending.codec.outcomes(packet):
                if isinstance(outcome, Rejected):
                    pending.last_rejection = outcome
                    self.logger.debug(
                        "Discarded frame from %s (%s): %s",
                        self.session.address,
                        outcome.reason.value,
                        outcome.detail,
                    )
                    continue
                frame = outcome.frame
                if frame.command != pending.expect:
                    unexpected = UnexpectedResponseError(
                        f"Ignoring response 0x{frame.command:02x} while waiting for 0x{pending.expect:02x}",
                        self.session.address,
                        expected_command=pending.expect,
                        received_command=frame.command,
                    )
                    self.logger.debug("%s", unexpected, extra={"error": unexpected.to_dict()})
                    continue
                self.logger.debug(
                    "Received response 0x%02x (%d bytes) from %s",
                    frame.command,
                    len(frame.payload),
                    self.session.address,
                )
                return frame
        raise RequestCancelledError(
            "Session closed while waiting for a response",
            self.session.address,
            pending.command,
        )

    def _cancelled_error(self, pending: PendingRequest) -> RequestCancelledError:
        return RequestCancelledError(
            "Request cancelled: client closed",
            self.session.address,
            pending.command,
        )

    def close(self) -> None:
        """
        Stop accepting requests.

        The active request and every queued one fail with RequestCancelledError;
        the session itself stays open and is closed by its owner.
        """
        self._closed = True
        active = self._active
        if active is not None and not active.cancelled:
            active.cancelled = True
            if active.response is not None and not active.response.done():
                active.response.cancel()
        while self._waiting:
            waiter = self._waiting.popleft()
            if waiter.turn is not None and not waiter.turn.done():
                waiter.turn.set_exception(self._cancelled_error(waiter))
