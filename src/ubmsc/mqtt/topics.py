"""
MQTT topic structure for ubmsc.

Topics published by the push loop:

- ``{prefix}/device/{device_id}/info``    device info record (retained)
- ``{prefix}/device/{device_id}/cells``   cell data record, one per interval
- ``{prefix}/device/{device_id}/status``  poll outcome of the device (retained)
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass
class TopicInfo:
    """Information about an MQTT topic."""

    pattern: str
    description: str
    retain: bool


class MQTTTopics:
    """MQTT topic builder and matcher for a configurable prefix."""

    def __init__(self, prefix: str = "ubmsc") -> None:
        """
        Initialize topic helper with configurable prefix.

        Args:
            prefix: Topic prefix; surrounding slashes are removed.
        """
        self.prefix = prefix.strip("/")
        self._device_topic = re.compile(
            rf"^{re.escape(self.prefix)}/device/(?P<device>[^/+#]+)/(?P<kind>info|cells|status)$",
        )

    def describe(self) -> dict[str, TopicInfo]:
        """Return the published topics keyed by kind."""
        return {
            "info": TopicInfo(
                pattern=f"{self.prefix}/device/{{device_id}}/info",
                description="Static device information",
                retain=True,
            ),
            "cells": TopicInfo(
                pattern=f"{self.prefix}/device/{{device_id}}/cells",
                description="Cell voltages, temperatures and pack state",
                retain=False,
            ),
            "status": TopicInfo(
                pattern=f"{self.prefix}/device/{{device_id}}/status",
                description="Outcome of the last poll",
                retain=True,
            ),
        }

    def device_info(self, device_id: str) -> str:
        """Get the device info topic."""
        return f"{self.prefix}/device/{device_id}/info"

    def device_cells(self, device_id: str) -> str:
        """Get the cell data topic."""
        return f"{self.prefix}/device/{device_id}/cells"

    def device_status(self, device_id: str) -> str:
        """Get the device status topic."""
        return f"{self.prefix}/device/{device_id}/status"

    def device_wildcard(self, device_id: str = "+") -> str:
        """Get a subscription pattern for every topic of one device."""
        return f"{self.prefix}/device/{device_id}/+"

    def parse(self, topic: str) -> tuple[str, str] | None:
        """
        Split a device topic into ``(device_id, kind)``.

        Returns:
            None if the topic is not one of ours.
        """
        match = self._device_topic.match(topic)
        if match is None:
            return None
        return match.group("device"), match.group("kind")
