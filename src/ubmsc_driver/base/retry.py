"""Retry policy for push cycles and circuit breakers kept per device."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    import logging
    from collections.abc import Awaitable, Callable, Mapping

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raise when an operation still fails after every attempt."""

    def __init__(self, message: str, attempts: int) -> None:
        """Initialize with the number of attempts made."""
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently a failing operation is repeated.

    Attributes:
        attempts: Total number of calls before giving up.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound of any single delay.
        jitter: Relative random spread applied to each delay.
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    @classmethod
    def from_config(cls, mqtt_config: Mapping[str, Any]) -> RetryPolicy:
        """Build the policy from the ``system.mqtt`` config section."""
        return cls(
            attempts=mqtt_config.get("retries", cls.attempts),
            base_delay=mqtt_config.get("retry_delay", cls.base_delay),
        )

    def delay(self, attempt: int) -> float:
        """Return the pause after the zero-based ``attempt`` failed."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        # Jitter only spreads retries out; it has no security role
        spread = delay * self.jitter * (random.random() * 2 - 1)  # nosec: B311  # noqa: S311
        return max(0.0, delay + spread)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[Exception], ...],
        logger: logging.Logger,
        what: str,
    ) -> T:
        """
        Await ``operation`` until it succeeds or the attempts run out.

        Args:
            operation: Zero-argument coroutine function.
            retry_on: Exception types that trigger another attempt; others propagate.
            logger: Logger for retry warnings.
            what: Short description used in logs and errors.

        Raises:
            RetryExhaustedError: From the last failure once attempts run out.
        """
        last_exc: Exception | None = None
        for attempt in range(self.attempts):
            try:
                return await operation()
            except retry_on as exc:
                last_exc = exc
                logger.warning(
                    "Attempt %d/%d of %s failed with %s: %s",
                    attempt + 1,
                    self.attempts,
                    what,
                    type(exc).__name__,
                    exc,
                )
                if attempt < self.attempts - 1:
                    await asyncio.sleep(self.delay(attempt))

        logger.error("All %d attempts of %s failed", self.attempts, what)
        raise RetryExhaustedError(f"All {self.attempts} attempts of {what} failed", self.attempts) from last_exc


class BreakerState(Enum):
    """Whether a device is polled."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class DeviceHealth:
    """Failure record of one device."""

    failures: int = 0
    opened_at: float | None = None
    last_error: str | None = None


class DeviceBreakers:
    """
    Circuit breakers keyed by device id.

    A device's breaker opens after ``failure_threshold`` consecutive failures.
    Once ``recovery_timeout`` seconds pass it turns half-open and lets one
    poll through: a success closes it, a failure opens it again at once.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize with no recorded failures."""
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._devices: dict[str, DeviceHealth] = {}

    def __getitem__(self, device_id: str) -> DeviceHealth:
        """Return the failure record of a device, creating an empty one."""
        return self._devices.setdefault(device_id, DeviceHealth())

    def state(self, device_id: str) -> BreakerState:
        """Return the breaker state of a device."""
        health = self._devices.get(device_id)
        if health is None or health.opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - health.opened_at >= self.recovery_timeout:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    def allow(self, device_id: str) -> bool:
        """Return True if the device may be polled now."""
        return self.state(device_id) is not BreakerState.OPEN

    def record_failure(self, device_id: str, error: object) -> BreakerState:
        """Count a failed poll and return the resulting state."""
        trial = self.state(device_id) is BreakerState.HALF_OPEN
        health = self[device_id]
        health.failures += 1
        health.last_error = str(error)
        if trial or health.failures >= self.failure_threshold:
            health.opened_at = self._clock()
        return self.state(device_id)

    def record_success(self, device_id: str) -> None:
        """Forget the device's failures and close its breaker."""
        self._devices.pop(device_id, None)
