import pytest

from devicecore.bus import MemoryMessageBus, MessageEnvelope
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.event import Event, Reading
from devicecore.observability import ServiceMetrics
from devicecore.runtime.publisher import EventPublisher
from devicecore.values.types import ValueType


def _event(value: str = "1") -> Event:
    return Event(
        device_name="d/1",
        profile_name="p1",
        source_name="temp",
        readings=[Reading(resource_name="temp", value_type=ValueType.STRING, value=value)],
    )


@pytest.mark.asyncio
async def test_send_event_publishes_on_escaped_device_topic() -> None:
    bus = MemoryMessageBus()
    await bus.connect()
    metrics = ServiceMetrics()
    publisher = EventPublisher(bus=bus, service_name="svc", metrics=metrics)

    await publisher.send_event(_event(), correlation_id="corr-1")

    message = bus.published[0]
    assert message.topic == "edgex/events/device/p1/d%2F1/temp"
    assert message.envelope.correlation_id == "corr-1"
    assert message.envelope.payload["deviceName"] == "d/1"
    assert metrics.events_published_total == 1


@pytest.mark.asyncio
async def test_oversized_event_is_dropped() -> None:
    bus = MemoryMessageBus()
    await bus.connect()
    metrics = ServiceMetrics()
    publisher = EventPublisher(bus=bus, service_name="svc", max_event_size=1024, metrics=metrics)

    with pytest.raises(EdgeError) as exc:
        await publisher.send_event(_event("x" * 2048))

    assert exc.value.kind == ErrorKind.CONTRACT_INVALID
    assert bus.published == []
    assert metrics.events_dropped_total == 1
    assert publisher.check_event_size(_event("small")) < 1024


@pytest.mark.asyncio
async def test_send_response_uses_request_topic() -> None:
    bus = MemoryMessageBus()
    await bus.connect()
    publisher = EventPublisher(bus=bus, service_name="svc", topic_prefix="site1")

    await publisher.send_response("req-9", MessageEnvelope(payload={"ok": True}, request_id="req-9"))

    assert bus.published[0].topic == "site1/response/svc/req-9"
