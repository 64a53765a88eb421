"""Event and response publishing onto the message bus."""

from __future__ import annotations

from loguru import logger

from devicecore.bus.base import MessageBus
from devicecore.bus.envelope import MessageEnvelope
from devicecore.bus.topics import event_topic, response_topic
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.event import Event
from devicecore.observability import ServiceMetrics


class EventPublisher:
    """Publishes events on per-device topics and command replies on per-request topics."""

    def __init__(
        self,
        *,
        bus: MessageBus,
        service_name: str,
        topic_prefix: str = "edgex",
        max_event_size: int = 0,
        metrics: ServiceMetrics | None = None,
    ) -> None:
        self.bus = bus
        self.service_name = service_name
        self.topic_prefix = topic_prefix
        self.max_event_size = max(0, int(max_event_size))
        self.metrics = metrics or ServiceMetrics()

    def check_event_size(self, event: Event) -> int:
        """Serialized size of ``event``; raises when it exceeds the configured cap."""
        size = len(event.to_json())
        if self.max_event_size and size > self.max_event_size:
            self.metrics.record_event_dropped()
            raise EdgeError(
                ErrorKind.CONTRACT_INVALID,
                f"event size {size} bytes exceeds the limit of {self.max_event_size} bytes",
            )
        return size

    async def send_event(self, event: Event, correlation_id: str = "") -> None:
        size = self.check_event_size(event)
        envelope = MessageEnvelope(payload=event.to_dict())
        if correlation_id:
            envelope.correlation_id = correlation_id
        topic = event_topic(self.topic_prefix, event.profile_name, event.device_name, event.source_name)
        await self.bus.publish(topic, envelope)
        self.metrics.record_event_published()
        logger.debug(
            f"event {event.id} ({size} bytes) published to {topic} correlation-id={envelope.correlation_id}"
        )

    async def send_response(self, request_id: str, envelope: MessageEnvelope) -> None:
        topic = response_topic(self.topic_prefix, self.service_name, request_id)
        await self.bus.publish(topic, envelope)
        logger.debug(f"response published to {topic} correlation-id={envelope.correlation_id}")
