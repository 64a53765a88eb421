"""Message bus transports and topic helpers."""

from devicecore.bus.base import BusMessage, MessageBus, Subscription, pump
from devicecore.bus.envelope import MessageEnvelope
from devicecore.bus.memory import MemoryMessageBus
from devicecore.bus.mqtt import MQTTMessageBus

__all__ = [
    "BusMessage",
    "MemoryMessageBus",
    "MessageBus",
    "MessageEnvelope",
    "MQTTMessageBus",
    "Subscription",
    "pump",
]
