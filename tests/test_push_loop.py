"""Tests for the periodic MQTT push loop."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.support.fixtures.sample_frames import EMULATED_ADDRESS
from ubmsc.mqtt import MQTTConnectionError, MQTTPublisher, PushLoop
from ubmsc_driver.base.discovery import DeviceLocator
from ubmsc_driver.base.retry import BreakerState, RetryExhaustedError, RetryPolicy
from ubmsc_driver.client import BMSClient, ClientOptions
from ubmsc_driver.jk.constants import JK_SERVICE_UUID
from ubmsc_driver.jk.emulator import EmulatedBus

MISSING = "AA:BB:CC:DD:EE:FF"


@pytest.fixture
def mock_publisher() -> MQTTPublisher:
    """Create a mock MQTT publisher."""
    publisher = MagicMock(spec=MQTTPublisher)
    publisher.connect = AsyncMock()
    publisher.disconnect = AsyncMock()
    publisher.publish_records = AsyncMock()
    publisher.publish_status = AsyncMock()
    return publisher


def clients_for(bus: EmulatedBus, *selectors: str) -> list[BMSClient]:
    """Build clients sharing one locator on the emulated bus."""
    locator = DeviceLocator(JK_SERVICE_UUID, scanner_factory=bus.scanner)
    options = ClientOptions(scan_timeout=0.05, request_timeout=1.0)
    return [BMSClient(s, options, locator=locator, client_factory=bus.client) for s in selectors]


class TestPushLoop:
    """Test push loop cycles."""

    @pytest.mark.asyncio
    async def test_run_once_publishes(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test one cycle publishes both records and an online status."""
        loop = PushLoop(clients_for(bus, EMULATED_ADDRESS), mock_publisher, interval=1)
        assert await loop.run_once() == 1
        mock_publisher.connect.assert_awaited_once()
        device_id, info, cells = mock_publisher.publish_records.await_args.args
        assert device_id == EMULATED_ADDRESS
        assert info.device_model == "JK_BD4A8S4P"
        assert cells.cell_count == 6
        mock_publisher.publish_status.assert_awaited_once_with(EMULATED_ADDRESS, online=True)
        await loop.close()

    @pytest.mark.asyncio
    async def test_device_info_once_per_connection(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test device info is read again only after a reconnect."""
        clients = clients_for(bus, EMULATED_ADDRESS)
        loop = PushLoop(clients, mock_publisher, interval=1)
        await loop.run_once()
        await loop.run_once()
        assert mock_publisher.publish_records.await_args.args[1] is None

        await clients[0].close()
        await loop.run_once()
        assert mock_publisher.publish_records.await_args.args[1] is not None
        await loop.close()

    @pytest.mark.asyncio
    async def test_device_failure_reported(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test a missing device is reported offline while others publish."""
        loop = PushLoop(clients_for(bus, MISSING, EMULATED_ADDRESS), mock_publisher, interval=1)
        assert await loop.run_once() == 1
        first = mock_publisher.publish_status.await_args_list[0]
        assert first.args == (MISSING,)
        assert first.kwargs["online"] is False
        assert first.kwargs["error"]["error_type"] == "ScanTimeoutError"
        assert loop.breakers[MISSING].failures == 1
        await loop.close()

    @pytest.mark.asyncio
    async def test_breaker_skips_failing_device(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test a device is skipped once its breaker opens."""
        loop = PushLoop(clients_for(bus, MISSING), mock_publisher, interval=1, failure_threshold=1)
        assert await loop.run_once() == 0
        assert await loop.run_once() == 0
        assert mock_publisher.publish_status.await_count == 1
        await loop.close()

    @pytest.mark.asyncio
    async def test_breaker_retries_after_recovery(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test a device is polled again once its recovery timeout passes."""
        loop = PushLoop(
            clients_for(bus, MISSING),
            mock_publisher,
            interval=1,
            failure_threshold=1,
            recovery_timeout=0,
        )
        assert await loop.run_once() == 0
        assert loop.breakers.state(MISSING) is BreakerState.HALF_OPEN
        assert await loop.run_once() == 0
        assert mock_publisher.publish_status.await_count == 2
        assert loop.breakers[MISSING].failures == 2
        await loop.close()

    @pytest.mark.asyncio
    async def test_broker_unavailable(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test the cycle gives up after the configured attempts."""
        mock_publisher.connect.side_effect = MQTTConnectionError("refused", "localhost", 1883)
        retry = RetryPolicy(attempts=2, base_delay=0.01)
        loop = PushLoop(clients_for(bus, EMULATED_ADDRESS), mock_publisher, retry=retry)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await loop.run_once()
        assert exc_info.value.attempts == 2
        assert mock_publisher.connect.await_count == 2
        await loop.close()

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test run() loops until the stop event and then releases everything."""
        clients = clients_for(bus, EMULATED_ADDRESS)
        loop = PushLoop(clients, mock_publisher, interval=0.01)
        stop = asyncio.Event()

        async def stop_after_two(*_args: Any, **_kwargs: Any) -> None:
            if mock_publisher.publish_records.await_count >= 2:
                stop.set()

        mock_publisher.publish_records.side_effect = stop_after_two
        await asyncio.wait_for(loop.run(stop), timeout=5)
        assert mock_publisher.publish_records.await_count == 2
        assert not clients[0].is_open
        mock_publisher.disconnect.assert_awaited_once()

    def test_interval_follows_config(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test a config change updates the interval."""
        config_manager = MagicMock()
        loop = PushLoop(clients_for(bus, EMULATED_ADDRESS), mock_publisher, interval=60, config_manager=config_manager)
        config_manager.register_listener.assert_called_once()
        listener = config_manager.register_listener.call_args.args[0]
        listener("system", {"mqtt": {"interval": 15}})
        assert loop.interval == 15
        listener("devices", {"mqtt": {"interval": 5}})
        assert loop.interval == 15

    def test_retry_and_recovery_follow_config(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test a config change updates the retry policy and the breaker recovery timeout."""
        config_manager = MagicMock()
        loop = PushLoop(clients_for(bus, EMULATED_ADDRESS), mock_publisher, interval=60, config_manager=config_manager)
        assert loop.breakers.recovery_timeout == 300
        listener = config_manager.register_listener.call_args.args[0]
        listener("system", {"mqtt": {"interval": 10, "retries": 5, "retry_delay": 0.5}})
        assert loop.retry == RetryPolicy(attempts=5, base_delay=0.5)
        assert loop.breakers.recovery_timeout == 50

    def test_explicit_recovery_timeout_kept(self, bus: EmulatedBus, mock_publisher: Any) -> None:
        """Test an explicit recovery timeout does not follow the interval."""
        config_manager = MagicMock()
        loop = PushLoop(
            clients_for(bus, EMULATED_ADDRESS),
            mock_publisher,
            interval=60,
            recovery_timeout=30,
            config_manager=config_manager,
        )
        listener = config_manager.register_listener.call_args.args[0]
        listener("system", {"mqtt": {"interval": 10}})
        assert loop.breakers.recovery_timeout == 30
