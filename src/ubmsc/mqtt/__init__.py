"""MQTT push interface for ubmsc."""

from .client import MQTTConnectionError, MQTTPublisher
from .service import PushLoop
from .topics import MQTTTopics

__all__ = [
    "MQTTConnectionError",
    "MQTTPublisher",
    "MQTTTopics",
    "PushLoop",
]
