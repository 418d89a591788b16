"""BMS protocol exception classes and error context helpers."""

from __future__ import annotations

from typing import Any


class BMSError(Exception):
    """Base exception class for BMS client errors."""

    ERROR_CODE = 2000

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize BMSError with message, device address, and context."""
        super().__init__(message)
        self.message = message
        self.device_address = device_address
        self.context = context or {}
        self.error_code = self.ERROR_CODE

    def __str__(self) -> str:
        """Return string representation with device address if available."""
        if self.device_address:
            return f"BMS Error ({self.device_address}): {self.message}"
        return f"BMS Error: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/diagnostics."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "device_address": self.device_address,
            "error_code": self.error_code,
            "context": self.context,
        }


class DeviceNotFoundError(BMSError):
    """Raised when no peripheral matches the requested selector."""

    ERROR_CODE = 2001

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        selector: str | None = None,
        scan_timeout: float | None = None,
    ) -> None:
        """Initialize DeviceNotFoundError with the selector that was searched for."""
        context = {
            "selector": selector,
            "scan_timeout": scan_timeout,
        }
        super().__init__(message, device_address, context)


class ScanTimeoutError(DeviceNotFoundError):
    """Raised when the scan window elapsed before the selector matched."""

    ERROR_CODE = 2002


class ConnectFailedError(BMSError):
    """Raised when connecting, discovering characteristics or subscribing fails."""

    ERROR_CODE = 2003

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        stage: str | None = None,
        characteristic_uuid: str | None = None,
    ) -> None:
        """Initialize ConnectFailedError with the failing connection stage."""
        context = {
            "stage": stage,
            "characteristic_uuid": characteristic_uuid,
        }
        super().__init__(message, device_address, context)


class FrameError(BMSError):
    """Base class for frames rejected during reassembly."""


class ChecksumMismatchError(FrameError):
    """Raised when a reassembled frame fails checksum validation."""

    ERROR_CODE = 2004

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        calculated_checksum: int | None = None,
        expected_checksum: int | None = None,
        data_length: int | None = None,
    ) -> None:
        """Initialize ChecksumMismatchError with checksum details."""
        context = {
            "calculated_checksum": calculated_checksum,
            "expected_checksum": expected_checksum,
            "data_length": data_length,
        }
        super().__init__(message, device_address, context)


class MalformedFrameError(FrameError):
    """Raised when bytes do not form a frame (header, length or size violation)."""

    ERROR_CODE = 2005

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        reason: str | None = None,
        raw_data: bytes | None = None,
    ) -> None:
        """Initialize MalformedFrameError with the rejection reason."""
        context = {
            "reason": reason,
            "raw_data": raw_data.hex() if raw_data else None,
        }
        super().__init__(message, device_address, context)


class ProtocolTimeoutError(BMSError):
    """Raised when no matching response arrives before the request deadline."""

    ERROR_CODE = 2006

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        command: int | None = None,
        timeout_duration: float | None = None,
    ) -> None:
        """Initialize ProtocolTimeoutError with the command and deadline."""
        context = {
            "command": command,
            "timeout_duration": timeout_duration,
        }
        super().__init__(message, device_address, context)


class UnexpectedResponseError(BMSError):
    """Describes a complete frame whose command does not match the pending request."""

    ERROR_CODE = 2007

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        expected_command: int | None = None,
        received_command: int | None = None,
    ) -> None:
        """Initialize UnexpectedResponseError with both command ids."""
        context = {
            "expected_command": expected_command,
            "received_command": received_command,
        }
        super().__init__(message, device_address, context)


class DecodeError(BMSError):
    """Raised when a payload field cannot be decoded into a record."""

    ERROR_CODE = 2008

    def __init__(
        self,
        field: str,
        reason: str,
        device_address: str | None = None,
        raw_data: bytes | None = None,
    ) -> None:
        """Initialize DecodeError naming the offending field."""
        self.field = field
        self.reason = reason
        context = {
            "field": field,
            "reason": reason,
            "raw_data": raw_data.hex() if raw_data else None,
        }
        super().__init__(f"Cannot decode '{field}': {reason}", device_address, context)


class SessionClosedError(BMSError):
    """Raised when an operation is attempted on a closed or failed session."""

    ERROR_CODE = 2009

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        operation: str | None = None,
    ) -> None:
        """Initialize SessionClosedError with the rejected operation."""
        context = {"operation": operation}
        super().__init__(message, device_address, context)


class RequestCancelledError(BMSError):
    """Raised when an outstanding or queued request is cancelled by session close."""

    ERROR_CODE = 2010

    def __init__(
        self,
        message: str,
        device_address: str | None = None,
        command: int | None = None,
    ) -> None:
        """Initialize RequestCancelledError with the cancelled command."""
        context = {"command": command}
        super().__init__(message, device_address, context)


class ConnectionLostError(RequestCancelledError):
    """Raised when the transport reports a disconnection during a session."""

    ERROR_CODE = 2011
