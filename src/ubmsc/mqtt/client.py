"""MQTT publisher for BMS records."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aiomqtt import Client, MqttError

from .topics import MQTTTopics

if TYPE_CHECKING:
    from collections.abc import Callable

    from ubmsc.config.config_manager import ConfigManager
    from ubmsc_driver.base.records import CellData, DeviceInfo

CONNECT_TIMEOUT = 10.0


class MQTTConnectionError(Exception):
    """Raised when the broker cannot be reached or a publish fails."""

    def __init__(self, message: str, broker: str = "", port: int = 0) -> None:
        """Initialize MQTT connection error."""
        super().__init__(message)
        self.broker = broker
        self.port = port


class MQTTPublisher:
    """
    Publish device records to an MQTT broker.

    Connection settings come from the ``mqtt`` block of the system config and
    are re-read on the next :meth:`connect` after the config file changes.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        *,
        client_factory: Callable[..., Any] = Client,
    ) -> None:
        """
        Initialize the publisher.

        Args:
            config_manager: Configuration manager instance for accessing MQTT settings.
            client_factory: Callable building the aiomqtt client.
        """
        self.config_manager = config_manager
        self.logger = logging.getLogger("ubmsc.mqtt")
        self._client_factory = client_factory
        self._client: Any = None
        self._mqtt_config: dict[str, Any] = dict(config_manager.get_config("system")["mqtt"])
        self.topics = MQTTTopics(self._mqtt_config["topic_prefix"])
        config_manager.register_listener(self._on_config_change)

    def _on_config_change(self, section: str, config: dict[str, Any]) -> None:
        if section != "system":
            return
        self._mqtt_config = dict(config["mqtt"])
        self.topics = MQTTTopics(self._mqtt_config["topic_prefix"])
        self.logger.info("MQTT configuration updated; applies from the next connection")

    @property
    def connected(self) -> bool:
        """Return True while a broker connection is up."""
        return self._client is not None

    def _prepare_client_kwargs(self) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {
            "hostname": self._mqtt_config["broker"],
            "port": self._mqtt_config["port"],
            "keepalive": self._mqtt_config.get("keepalive", 60),
        }
        username = self._mqtt_config.get("username")
        if username:
            client_kwargs["username"] = username
            password = self._mqtt_config.get("password")
            if password:
                client_kwargs["password"] = password
        return client_kwargs

    async def connect(self) -> None:
        """
        Connect to the broker.

        Raises:
            MQTTConnectionError: If the connection fails or times out.
        """
        if self.connected:
            return
        broker = self._mqtt_config["broker"]
        port = self._mqtt_config["port"]
        client = self._client_factory(**self._prepare_client_kwargs())
        try:
            await asyncio.wait_for(client.__aenter__(), timeout=CONNECT_TIMEOUT)
        except (MqttError, OSError, TimeoutError) as e:
            self.logger.debug("MQTT connection to %s:%s failed", broker, port, exc_info=True)
            raise MQTTConnectionError(
                f"Cannot connect to MQTT broker {broker}:{port}: {e}",
                broker,
                port,
            ) from e
        self._client = client
        self.logger.info("Connected to MQTT broker at %s:%d", broker, port)

    async def disconnect(self) -> None:
        """Disconnect from the broker; a no-op when not connected."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except (MqttError, OSError, TimeoutError) as e:
            self.logger.warning("Error during MQTT disconnect: %s", e)
        self.logger.info("Disconnected from MQTT broker")

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any] | str,
        *,
        retain: bool | None = None,
    ) -> None:
        """
        Publish one message with the configured QoS.

        Args:
            topic: Full topic name.
            payload: Message payload; dicts are JSON-encoded.
            retain: Retain flag; defaults to the configured value.

        Raises:
            MQTTConnectionError: If not connected or the broker rejects the message.
        """
        if self._client is None:
            raise MQTTConnectionError(
                "Not connected to MQTT broker",
                self._mqtt_config["broker"],
                self._mqtt_config["port"],
            )
        message = json.dumps(payload, default=str) if isinstance(payload, dict) else str(payload)
        qos = self._mqtt_config.get("qos", 1)
        if retain is None:
            retain = self._mqtt_config.get("retain", False)
        try:
            await self._client.publish(topic, message, qos=qos, retain=retain)
        except (MqttError, OSError) as e:
            self.logger.warning("Failed to publish to topic '%s': %s", topic, e)
            await self.disconnect()
            raise MQTTConnectionError(
                f"Failed to publish message: {e}",
                self._mqtt_config["broker"],
                self._mqtt_config["port"],
            ) from e
        self.logger.debug("Published message to topic '%s' (QoS %d, retain=%s)", topic, qos, retain)

    async def publish_records(
        self,
        device_id: str,
        info: DeviceInfo | None = None,
        cells: CellData | None = None,
    ) -> None:
        """
        Publish the records read from one device.

        Each payload is the record's fields plus ``device`` and ``timestamp``.

        Raises:
            MQTTConnectionError: If a publish fails.
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        if info is not None:
            payload = {"device": device_id, "timestamp": timestamp, **info.to_dict()}
            await self.publish(self.topics.device_info(device_id), payload, retain=True)
        if cells is not None:
            payload = {"device": device_id, "timestamp": timestamp, **cells.to_dict()}
            await self.publish(self.topics.device_cells(device_id), payload)

    async def publish_status(
        self,
        device_id: str,
        *,
        online: bool,
        error: dict[str, Any] | None = None,
    ) -> None:
        """
        Publish the poll outcome of a device as a retained message.

        Raises:
            MQTTConnectionError: If the publish fails.
        """
        payload: dict[str, Any] = {
            "device": device_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "online": online,
        }
        if error is not None:
            payload["error"] = error
        await self.publish(self.topics.device_status(device_id), payload, retain=True)

    async def __aenter__(self) -> MQTTPublisher:
        """Connect to the broker."""
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Disconnect from the broker."""
        await self.disconnect()
