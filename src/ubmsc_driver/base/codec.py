"""
Wire frame encoding, validation and multi-packet reassembly.

A frame is ``[header][command][length][payload][checksum]``. The header bytes,
the width of the length field (zero when the payload size is fixed), the
payload size and the checksum algorithm are constants of a :class:`FrameFormat`,
one per device family. Requests and responses may use different layouts, so a
format carries one :class:`FrameLayout` per direction.

:class:`FrameCodec` performs no I/O: it turns commands into bytes and
notification packets into :class:`FrameOutcome` values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import reduce
from operator import xor
from typing import TYPE_CHECKING, Literal

from .exceptions import ChecksumMismatchError, FrameError, MalformedFrameError

if TYPE_CHECKING:
    from collections.abc import Iterator

MAX_COMMAND = 0xFF


class ChecksumKind(Enum):
    """Checksum algorithms computed over every byte preceding the checksum."""

    SUM8 = "sum8"
    XOR8 = "xor8"

    @property
    def size(self) -> int:
        """Return the checksum width in bytes."""
        return 1

    def compute(self, data: bytes) -> bytes:
        """Compute the checksum bytes for ``data``."""
        if self is ChecksumKind.SUM8:
            return bytes([sum(data) & 0xFF])
        return bytes([reduce(xor, data, 0)])


@dataclass(frozen=True)
class FrameLayout:
    """Layout of frames travelling in one direction."""

    header: bytes
    length_size: int = 0
    payload_size: int | None = None
    max_payload_size: int = 0xFFFF
    length_byteorder: Literal["little", "big"] = "little"

    def __post_init__(self) -> None:
        """Validate that the payload size is either fixed or length-prefixed."""
        if not self.header:
            raise ValueError("Frame header must not be empty")
        if self.length_size == 0 and self.payload_size is None:
            raise ValueError("A layout without length field needs a fixed payload_size")
        if self.length_size > 0 and self.payload_size is not None:
            raise ValueError("A layout cannot have both a length field and a fixed payload_size")

    @property
    def prefix_size(self) -> int:
        """Return the number of bytes before the payload."""
        return len(self.header) + 1 + self.length_size

    def frame_size(self, payload_length: int, checksum_size: int) -> int:
        """Return the total frame size for a payload of ``payload_length`` bytes."""
        return self.prefix_size + payload_length + checksum_size


@dataclass(frozen=True)
class FrameFormat:
    """Wire format of one device family."""

    name: str
    request: FrameLayout
    response: FrameLayout
    checksum: ChecksumKind = ChecksumKind.SUM8
    heartbeat: bytes | None = None

    @classmethod
    def symmetric(
        cls,
        name: str,
        layout: FrameLayout,
        checksum: ChecksumKind = ChecksumKind.SUM8,
        heartbeat: bytes | None = None,
    ) -> FrameFormat:
        """Build a format whose requests and responses share one layout."""
        return cls(name, layout, layout, checksum, heartbeat)

    def peer(self) -> FrameFormat:
        """Return the format as seen from the device side (directions swapped)."""
        return FrameFormat(
            name=f"{self.name}-peer",
            request=self.response,
            response=self.request,
            checksum=self.checksum,
            heartbeat=self.heartbeat,
        )


@dataclass(frozen=True)
class Frame:
    """A validated frame: command id and payload bytes."""

    command: int
    payload: bytes = b""


class RejectReason(Enum):
    """Why the codec discarded buffered bytes."""

    CHECKSUM_MISMATCH = "checksum_mismatch"
    LENGTH_OVERFLOW = "length_overflow"
    HEADER_MISMATCH = "header_mismatch"
    TRUNCATED = "truncated"


@dataclass(frozen=True)
class Incomplete:
    """More packets are needed before a frame can be resolved."""


@dataclass(frozen=True)
class Complete:
    """A full frame was reassembled and passed checksum validation."""

    frame: Frame


@dataclass(frozen=True)
class Rejected:
    """Buffered bytes were discarded."""

    reason: RejectReason
    detail: str = ""
    raw: bytes = field(default=b"", repr=False)
    calculated: int | None = None
    received: int | None = None

    def to_error(self, device_address: str | None = None) -> FrameError:
        """Convert the rejection into the matching exception."""
        if self.reason is RejectReason.CHECKSUM_MISMATCH:
            return ChecksumMismatchError(
                self.detail or "Checksum mismatch",
                device_address,
                calculated_checksum=self.calculated,
                expected_checksum=self.received,
                data_length=len(self.raw),
            )
        return MalformedFrameError(
            self.detail or f"Frame rejected: {self.reason.value}",
            device_address,
            reason=self.reason.value,
            raw_data=self.raw,
        )


FrameOutcome = Incomplete | Complete | Rejected

INCOMPLETE = Incomplete()


class FrameCodec:
    """
    Encode request frames and reassemble response frames.

    The codec owns one reassembly buffer. Feed it notification packets in
    arrival order; each call reports whether a frame completed, was rejected or
    needs more data. After any rejection the rejected bytes are dropped and
    reassembly resumes at the next header.
    """

    def __init__(
        self,
        frame_format: FrameFormat,
        logger: logging.Logger | None = None,
    ) -> None:
        """
        Initialize the codec.

        Args:
            frame_format: Wire format of the device family.
            logger: Optional logger instance.
        """
        self.format = frame_format
        self.logger = logger or logging.getLogger("ubmsc.codec")
        self._buffer = bytearray()
        self._synced = False

    @property
    def buffered(self) -> int:
        """Return the number of bytes held for reassembly."""
        return len(self._buffer)

    def reset(self) -> None:
        """Discard any partially reassembled frame."""
        self._buffer.clear()
        self._synced = False

    def encode(self, command: int, payload: bytes = b"") -> bytes:
        """
        Build a complete outgoing frame.

        Args:
            command: Command identifier (0-255).
            payload: Payload bytes; zero-padded when the layout has a fixed size.

        Returns:
            The frame bytes including header and checksum.

        Raises:
            ValueError: If the command is out of range or the payload too long.
        """
        if not 0 <= command <= MAX_COMMAND:
            raise ValueError(f"Command out of range: {command}")
        layout = self.format.request
        if layout.payload_size is not None:
            if len(payload) > layout.payload_size:
                raise ValueError(
                    f"Payload of {len(payload)} bytes exceeds fixed size {layout.payload_size}",
                )
            body = bytes(payload).ljust(layout.payload_size, b"\x00")
            length = b""
        else:
            if len(payload) > layout.max_payload_size:
                raise ValueError(
                    f"Payload of {len(payload)} bytes exceeds maximum {layout.max_payload_size}",
                )
            body = bytes(payload)
            length = len(body).to_bytes(layout.length_size, layout.length_byteorder)
        frame = layout.header + bytes([command]) + length + body
        return frame + self.format.checksum.compute(frame)

    def decode(self, data: bytes) -> Frame:
        """
        Parse exactly one complete response frame.

        Args:
            data: The frame bytes.

        Returns:
            The validated frame.

        Raises:
            MalformedFrameError: If the bytes do not form exactly one frame.
            ChecksumMismatchError: If the checksum does not match.
        """
        layout = self.format.response
        data = bytes(data)
        if not data.startswith(layout.header):
            raise MalformedFrameError(
                "Frame does not start with the response header",
                reason=RejectReason.HEADER_MISMATCH.value,
                raw_data=data,
            )
        payload_length = self._payload_length(data)
        if payload_length is None:
            raise MalformedFrameError(
                "Frame is shorter than its prefix",
                reason=RejectReason.TRUNCATED.value,
                raw_data=data,
            )
        if payload_length > layout.max_payload_size:
            raise MalformedFrameError(
                f"Declared length {payload_length} exceeds maximum {layout.max_payload_size}",
                reason=RejectReason.LENGTH_OVERFLOW.value,
                raw_data=data,
            )
        size = layout.frame_size(payload_length, self.format.checksum.size)
        if len(data) != size:
            raise MalformedFrameError(
                f"Frame is {len(data)} bytes, expected {size}",
                reason=RejectReason.TRUNCATED.value,
                raw_data=data,
            )
        outcome = self._validate(data)
        if isinstance(outcome, Rejected):
            raise outcome.to_error()
        return outcome.frame

    def feed(self, packet: bytes) -> FrameOutcome:
        """
        Accept one notification packet.

        Feeding ``b""`` resolves a frame that is already buffered, for example
        bytes that followed a previously completed frame.

        Args:
            packet: Raw notification bytes.

        Returns:
            Incomplete, Complete(frame) or Rejected(reason).
        """
        header = self.format.response.header
        if packet:
            if (
                not self._synced
                and not self._buffer
                and self.format.heartbeat
                and bytes(packet) == self.format.heartbeat
            ):
                self.logger.debug("Ignoring heartbeat packet")
                return INCOMPLETE
            if self._synced and bytes(packet).startswith(header):
                dropped = bytes(self._buffer)
                self._buffer = bytearray(packet)
                return Rejected(
                    RejectReason.TRUNCATED,
                    f"New frame header after {len(dropped)} bytes of an unfinished frame",
                    dropped,
                )
            self._buffer.extend(packet)
        return self._advance()

    def outcomes(self, packet: bytes) -> Iterator[Complete | Rejected]:
        """Feed one packet and yield every outcome it resolves."""
        outcome = self.feed(packet)
        while not isinstance(outcome, Incomplete):
            yield outcome
            outcome = self.feed(b"")

    def _advance(self) -> FrameOutcome:
        layout = self.format.response
        if not self._synced:
            rejected = self._synchronize(layout.header)
            if rejected is not None:
                return rejected
            if not self._synced:
                return INCOMPLETE

        payload_length = self._payload_length(self._buffer)
        if payload_length is None:
            return INCOMPLETE
        if payload_length > layout.max_payload_size:
            dropped = bytes(self._buffer)
            self.reset()
            return Rejected(
                RejectReason.LENGTH_OVERFLOW,
                f"Declared length {payload_length} exceeds maximum {layout.max_payload_size}",
                dropped,
            )
        size = layout.frame_size(payload_length, self.format.checksum.size)
        if len(self._buffer) < size:
            return INCOMPLETE

        raw = bytes(self._buffer[:size])
        del self._buffer[:size]
        self._synced = False
        return self._validate(raw)

    def _synchronize(self, header: bytes) -> Rejected | None:
        """Align the buffer on a header, dropping anything before it."""
        heartbeat = self.format.heartbeat
        while heartbeat and self._buffer.startswith(heartbeat):
            del self._buffer[: len(heartbeat)]

        index = self._buffer.find(header)
        if index >= 0:
            if index > 0:
                self.logger.debug("Skipping %d bytes before frame header", index)
                del self._buffer[:index]
            self._synced = True
            return None

        keep = _header_prefix_length(self._buffer, header)
        dropped = len(self._buffer) - keep
        if dropped == 0:
            return None
        raw = bytes(self._buffer[:dropped])
        del self._buffer[:dropped]
        return Rejected(
            RejectReason.HEADER_MISMATCH,
            f"Discarded {dropped} bytes without a frame header",
            raw,
        )

    def _payload_length(self, data: bytes | bytearray) -> int | None:
        layout = self.format.response
        if layout.payload_size is not None:
            return layout.payload_size
        if len(data) < layout.prefix_size:
            return None
        start = len(layout.header) + 1
        return int.from_bytes(
            data[start : start + layout.length_size],
            layout.length_byteorder,
        )

    def _validate(self, raw: bytes) -> Complete | Rejected:
        layout = self.format.response
        size = self.format.checksum.size
        expected = self.format.checksum.compute(raw[:-size])
        if raw[-size:] != expected:
            return Rejected(
                RejectReason.CHECKSUM_MISMATCH,
                f"Checksum mismatch: calculated {expected.hex()}, received {raw[-size:].hex()}",
                raw,
                calculated=int.from_bytes(expected, "big"),
                received=int.from_bytes(raw[-size:], "big"),
            )
        command = raw[len(layout.header)]
        return Complete(Frame(command, raw[layout.prefix_size : -size]))


def _header_prefix_length(data: bytearray, header: bytes) -> int:
    """Return the length of the longest suffix of ``data`` that starts ``header``."""
    for length in range(min(len(header) - 1, len(data)), 0, -1):
        if data.endswith(header[:length]):
            return length
    return 0
