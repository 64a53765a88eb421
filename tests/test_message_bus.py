import asyncio
import json

import pytest

from devicecore.bus import MemoryMessageBus, MessageEnvelope, MQTTMessageBus
from devicecore.bus.topics import (
    command_request_subscription,
    escape_name,
    event_topic,
    system_event_subscriptions,
    topic_matches,
    topic_tail,
    unescape_name,
)
from devicecore.config.schema import MessageBusConfig
from devicecore.errors import EdgeError, ErrorKind


class _FakePublishResult:
    def __init__(self, rc: int = 0) -> None:
        self.rc = rc


class _FakeMessage:
    def __init__(self, topic: str, payload: bytes) -> None:
        self.topic = topic
        self.payload = payload


class _FakeMQTTClient:
    def __init__(self, *, connect_rc: int = 0, publish_rc: int = 0) -> None:
        self.connect_rc = connect_rc
        self.publish_rc = publish_rc
        self.published: list[tuple[str, bytes, int]] = []
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.loop_started = False
        self.loop_stopped = False
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def connect_async(self, host: str, port: int, keepalive: int) -> None:
        del host, port, keepalive

    def loop_start(self) -> None:
        self.loop_started = True
        self.on_connect(self, None, {}, self.connect_rc, None)  # type: ignore[misc]

    def loop_stop(self) -> None:
        self.loop_stopped = True

    def disconnect(self) -> None:
        return None

    def subscribe(self, topic: str, qos: int = 0) -> None:
        del qos
        self.subscribed.append(topic)

    def unsubscribe(self, topic: str) -> None:
        self.unsubscribed.append(topic)

    def publish(self, topic: str, payload: bytes, qos: int):  # type: ignore[no-untyped-def]
        self.published.append((topic, payload, qos))
        return _FakePublishResult(rc=self.publish_rc)


def test_escape_name_protects_topic_levels() -> None:
    assert escape_name("a/b+c#d%e") == "a%2Fb%2Bc%23d%25e"
    assert unescape_name(escape_name("a/b+c#d%e")) == "a/b+c#d%e"
    assert event_topic("edgex", "p/1", "d1", "temp") == "edgex/events/device/p%2F1/d1/temp"


def test_topic_matches_wildcards() -> None:
    assert topic_matches("edgex/commandrequest/svc/#", "edgex/commandrequest/svc/d1/temp/get")
    assert topic_matches("a/+/c", "a/b/c")
    assert not topic_matches("a/+/c", "a/b/d")
    assert not topic_matches("a/b", "a/b/c")
    assert topic_tail("edgex/commandrequest/svc/#", "edgex/commandrequest/svc/d%2F1/temp/get") == [
        "d/1",
        "temp",
        "get",
    ]


def test_system_event_subscriptions_skip_redundant_patterns() -> None:
    patterns = system_event_subscriptions("edgex", "svc-1", "svc", "core-metadata")
    assert patterns[0] == "edgex/system-events/+/+/svc-1/#"
    assert "edgex/system-events/provisionwatcher/+/svc/#" in patterns
    assert len(system_event_subscriptions("edgex", "svc", "svc", "core-metadata")) == 2
    assert "edgex/system-events/deviceprofile/delete/core-metadata/#" in patterns
    assert command_request_subscription("edgex", "svc") == "edgex/commandrequest/svc/#"


def test_envelope_json_keys_and_response() -> None:
    request = MessageEnvelope(payload={"a": 1}, request_id="r1", query_params={"ds-pushevent": "true"})
    data = json.loads(request.to_json())
    assert data["requestID"] == "r1"
    assert data["correlationID"] == request.correlation_id
    assert data["queryParams"] == {"ds-pushevent": "true"}

    response = MessageEnvelope.response(request, {"ok": True}, error=True)
    assert response.correlation_id == request.correlation_id
    assert response.request_id == "r1"
    assert response.is_error

    decoded = MessageEnvelope.from_json(request.to_json(), topic="x/y")
    assert decoded.received_topic == "x/y"
    assert decoded.payload == {"a": 1}


@pytest.mark.asyncio
async def test_memory_bus_delivers_to_matching_subscriptions() -> None:
    bus = MemoryMessageBus()
    await bus.connect()
    sub = await bus.subscribe("edgex/events/#")
    other = await bus.subscribe("edgex/other/#")

    await bus.publish("edgex/events/device/p/d/s", MessageEnvelope(payload={"n": 1}))

    message = await asyncio.wait_for(sub.__aiter__().__anext__(), timeout=1)
    assert message.envelope.payload == {"n": 1}
    assert len(bus.published_on("edgex/events/#")) == 1
    await bus.disconnect()
    assert sub.closed and other.closed


@pytest.mark.asyncio
async def test_memory_bus_requires_connection() -> None:
    bus = MemoryMessageBus()
    with pytest.raises(RuntimeError):
        await bus.publish("t", MessageEnvelope())


@pytest.mark.asyncio
async def test_mqtt_bus_publish_and_dispatch() -> None:
    fake = _FakeMQTTClient()
    bus = MQTTMessageBus(MessageBusConfig(qos=1), client_id="svc", client_factory=lambda: fake)
    sub = await bus.subscribe("edgex/commandrequest/svc/#")
    await bus.connect()
    assert bus.connected
    assert fake.subscribed == ["edgex/commandrequest/svc/#"]

    await bus.publish("edgex/events/device/p/d/s", MessageEnvelope(payload={"x": 1}))
    topic, payload, qos = fake.published[0]
    assert topic == "edgex/events/device/p/d/s"
    assert qos == 1
    assert json.loads(payload)["payload"] == {"x": 1}

    envelope = MessageEnvelope(payload={"y": 2}, request_id="r1")
    fake.on_message(fake, None, _FakeMessage("edgex/commandrequest/svc/d1/temp/get", envelope.to_json()))  # type: ignore[misc]
    fake.on_message(fake, None, _FakeMessage("edgex/commandrequest/svc/bad", b"not json"))  # type: ignore[misc]
    message = await asyncio.wait_for(sub.__aiter__().__anext__(), timeout=1)
    assert message.envelope.request_id == "r1"
    assert message.envelope.received_topic == "edgex/commandrequest/svc/d1/temp/get"

    sub.close()
    assert fake.unsubscribed == ["edgex/commandrequest/svc/#"]
    await bus.disconnect()
    assert fake.loop_stopped


@pytest.mark.asyncio
async def test_mqtt_bus_publish_failure_is_service_unavailable() -> None:
    fake = _FakeMQTTClient(publish_rc=4)
    bus = MQTTMessageBus(MessageBusConfig(), client_factory=lambda: fake)
    await bus.connect()
    with pytest.raises(EdgeError) as exc:
        await bus.publish("t", MessageEnvelope())
    assert exc.value.kind == ErrorKind.SERVICE_UNAVAILABLE
    await bus.disconnect()


@pytest.mark.asyncio
async def test_mqtt_bus_connect_timeout() -> None:
    fake = _FakeMQTTClient(connect_rc=5)
    bus = MQTTMessageBus(MessageBusConfig(), connect_timeout=0.05, client_factory=lambda: fake)
    with pytest.raises(EdgeError) as exc:
        await bus.connect()
    assert exc.value.kind == ErrorKind.SERVICE_UNAVAILABLE
    assert fake.loop_stopped
