"""In-process message bus for tests and single-process deployments."""

from __future__ import annotations

from loguru import logger

from devicecore.bus.base import BusMessage, MessageBus, Subscription
from devicecore.bus.envelope import MessageEnvelope
from devicecore.bus.topics import topic_matches


class MemoryMessageBus(MessageBus):
    """Fans published envelopes out to matching subscriptions and records them."""

    name = "memory"

    def __init__(self) -> None:
        self.connected = False
        self.published: list[BusMessage] = []
        self._subscriptions: list[Subscription] = []

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        for subscription in list(self._subscriptions):
            subscription.close()
        self._subscriptions.clear()

    async def publish(self, topic: str, envelope: MessageEnvelope) -> None:
        if not self.connected:
            raise RuntimeError("memory message bus is not connected")
        # Round-trip through JSON so subscribers never share objects with publishers.
        delivered = MessageEnvelope.from_json(envelope.to_json(), topic=topic)
        self.published.append(BusMessage(topic=topic, envelope=delivered))
        for subscription in list(self._subscriptions):
            if topic_matches(subscription.pattern, topic):
                await subscription.deliver(BusMessage(topic=topic, envelope=delivered))
        logger.debug(f"memory bus published {topic}")

    async def subscribe(self, pattern: str) -> Subscription:
        subscription = Subscription(pattern, on_close=self._forget)
        self._subscriptions.append(subscription)
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def published_on(self, pattern: str) -> list[BusMessage]:
        return [m for m in self.published if topic_matches(pattern, m.topic)]
