"""
Periodic push of BMS records to MQTT.

Every interval the loop polls each configured device and publishes its
records. A failing device is reported on its status topic and closed so the
next cycle reconnects; a device that keeps failing is skipped by its circuit
breaker until the recovery timeout passes, then tried once before it is
skipped again or back in rotation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from ubmsc_driver.base.exceptions import BMSError
from ubmsc_driver.base.retry import BreakerState, DeviceBreakers, RetryExhaustedError, RetryPolicy

from .client import MQTTConnectionError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ubmsc.config.config_manager import ConfigManager
    from ubmsc_driver.client import BMSClient

    from .client import MQTTPublisher


class PushLoop:
    """Poll devices on a fixed interval and publish what they report."""

    def __init__(
        self,
        clients: Iterable[BMSClient],
        publisher: MQTTPublisher,
        interval: float = 60.0,
        *,
        retry: RetryPolicy | None = None,
        failure_threshold: int = 3,
        recovery_timeout: float | None = None,
        config_manager: ConfigManager | None = None,
    ) -> None:
        """
        Initialize the loop.

        Args:
            clients: One client per device; opened lazily.
            publisher: MQTT publisher.
            interval: Seconds between cycles.
            retry: Attempts and backoff of a cycle when the broker fails.
            failure_threshold: Consecutive failures that open a device's breaker.
            recovery_timeout: Seconds a breaker stays open; five intervals by default.
            config_manager: Source of interval and retry updates.
        """
        self.clients = list(clients)
        self.publisher = publisher
        self.interval = interval
        self.retry = retry or RetryPolicy()
        self.logger = logging.getLogger("ubmsc.mqtt.push")
        self._recovery_follows_interval = recovery_timeout is None
        self.breakers = DeviceBreakers(
            failure_threshold,
            interval * 5 if recovery_timeout is None else recovery_timeout,
        )
        self._info_published: set[str] = set()
        if config_manager is not None:
            config_manager.register_listener(self._on_config_change)

    def _on_config_change(self, section: str, config: dict[str, Any]) -> None:
        if section != "system":
            return
        mqtt_config = config["mqtt"]
        interval = mqtt_config.get("interval", self.interval)
        if interval != self.interval:
            self.logger.info("Push interval changed from %ss to %ss", self.interval, interval)
            self.interval = interval
            if self._recovery_follows_interval:
                self.breakers.recovery_timeout = interval * 5
        retry = RetryPolicy.from_config(mqtt_config)
        if retry != self.retry:
            self.logger.info("Push retry changed to %d attempt(s), %ss base delay", retry.attempts, retry.base_delay)
            self.retry = retry

    async def poll_device(self, client: BMSClient) -> bool:
        """
        Read one device and publish its records.

        Device info is published once per connection; cell data every time.

        Returns:
            True if the device's records were published.

        Raises:
            MQTTConnectionError: If publishing fails.
        """
        device_id = client.device_id
        state = self.breakers.state(device_id)
        if state is BreakerState.OPEN:
            self.logger.debug("Skipping %s: circuit breaker open", device_id)
            return False
        if state is BreakerState.HALF_OPEN:
            self.logger.info("Trying %s again after %ss", device_id, self.breakers.recovery_timeout)

        info = None
        try:
            if not client.is_open:
                self._info_published.discard(device_id)
                await client.open()
            if device_id not in self._info_published:
                info = await client.device_info()
            cells = await client.cell_data()
        except BMSError as exc:
            if self.breakers.record_failure(device_id, exc) is BreakerState.OPEN:
                self.logger.warning(
                    "Circuit breaker opened for %s after %d failure(s)",
                    device_id,
                    self.breakers[device_id].failures,
                )
            self.logger.warning("Polling %s failed: %s", device_id, exc)
            self.logger.debug("Poll failure details", extra={"error": exc.to_dict()})
            await client.close()
            await self.publisher.publish_status(device_id, online=False, error=exc.to_dict())
            return False

        self.breakers.record_success(device_id)
        await self.publisher.publish_records(device_id, info, cells)
        if info is not None:
            self._info_published.add(device_id)
        await self.publisher.publish_status(device_id, online=True)
        return True

    async def run_once(self) -> int:
        """
        Run one cycle over every device.

        Returns:
            The number of devices whose records were published.

        Raises:
            RetryExhaustedError: If the broker stayed unreachable for every attempt.
        """

        async def cycle() -> int:
            await self.publisher.connect()
            published = 0
            for client in self.clients:
                if await self.poll_device(client):
                    published += 1
            return published

        published = await self.retry.run(
            cycle,
            retry_on=(MQTTConnectionError,),
            logger=self.logger,
            what="push cycle",
        )
        self.logger.info("Published records of %d/%d device(s)", published, len(self.clients))
        return published

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run cycles until ``stop_event`` is set, then release every connection."""
        try:
            while not stop_event.is_set():
                try:
                    await self.run_once()
                except RetryExhaustedError:
                    self.logger.exception("MQTT broker unavailable; skipping cycle")
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
        finally:
            await self.close()

    async def close(self) -> None:
        """Close every device client and disconnect from the broker."""
        for client in self.clients:
            await client.close()
        await self.publisher.disconnect()
