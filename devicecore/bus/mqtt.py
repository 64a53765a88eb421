"""MQTT message bus backed by paho-mqtt."""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Callable
from typing import Any

from loguru import logger

from devicecore.bus.base import BusMessage, MessageBus, Subscription
from devicecore.bus.envelope import MessageEnvelope
from devicecore.bus.topics import topic_matches
from devicecore.config.schema import MessageBusConfig
from devicecore.errors import EdgeError, ErrorKind

_SUBSCRIPTION_BUFFER = 1024


def _reason_value(rc: Any) -> int:
    # paho v2 passes ReasonCode objects, v1 plain ints.
    value = getattr(rc, "value", rc)
    try:
        return int(value) if value is not None else -1
    except (TypeError, ValueError):
        return -1


class MQTTMessageBus(MessageBus):
    """Bridges paho's network thread into asyncio subscriptions."""

    name = "mqtt"

    def __init__(
        self,
        config: MessageBusConfig,
        *,
        client_id: str = "",
        connect_timeout: float = 10.0,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.config = config
        self.client_id = client_id or config.client_id
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory
        self._client: Any | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connected = asyncio.Event()
        self._subscriptions: list[Subscription] = []

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._client = self._client_factory() if self._client_factory else self._setup_client()
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.connect_async(
            host=self.config.host,
            port=self.config.port,
            keepalive=max(10, self.config.keepalive_seconds),
        )
        self._client.loop_start()
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await self.disconnect()
            raise EdgeError(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"MQTT broker {self.config.host}:{self.config.port} not reachable",
                e,
            ) from e

    async def disconnect(self) -> None:
        client = self._client
        self._client = None
        self._connected.clear()
        if client is not None:
            try:
                client.disconnect()
            except Exception as e:
                logger.debug(f"MQTT disconnect failed: {e}")
            try:
                client.loop_stop()
            except Exception as e:
                logger.debug(f"MQTT loop stop failed: {e}")
        for subscription in list(self._subscriptions):
            subscription.close()
        self._subscriptions.clear()

    async def publish(self, topic: str, envelope: MessageEnvelope) -> None:
        if self._client is None:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, "MQTT client is not initialized")
        result = self._client.publish(topic, payload=envelope.to_json(), qos=self.config.qos)
        if result.rc != 0:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, f"MQTT publish failed rc={result.rc} topic={topic}")
        logger.debug(f"MQTT published {topic}")

    async def subscribe(self, pattern: str) -> Subscription:
        subscription = Subscription(pattern, maxsize=_SUBSCRIPTION_BUFFER, on_close=self._forget)
        self._subscriptions.append(subscription)
        if self._client is not None and self.connected:
            self._client.subscribe(pattern, qos=self.config.qos)
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if self._client is not None and not any(s.pattern == subscription.pattern for s in self._subscriptions):
            self._client.unsubscribe(subscription.pattern)

    def _setup_client(self) -> Any:
        try:
            import paho.mqtt.client as mqtt
        except ImportError as e:
            raise RuntimeError(
                f"paho-mqtt is required for {self.__class__.__name__}. Install with `pip install paho-mqtt`."
            ) from e

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
        )
        if self.config.username:
            client.username_pw_set(
                username=self.config.username,
                password=self.config.password or None,
            )
        if self.config.tls_enabled:
            client.tls_set(cert_reqs=ssl.CERT_REQUIRED, tls_version=ssl.PROTOCOL_TLS_CLIENT)

        client.reconnect_delay_set(
            min_delay=max(1, self.config.reconnect_min_seconds),
            max_delay=max(self.config.reconnect_min_seconds, self.config.reconnect_max_seconds),
        )
        return client

    def _on_connect(
        self,
        client: Any,
        userdata: Any,
        flags: Any,
        rc: Any,
        properties: Any | None = None,
    ) -> None:
        del userdata, flags, properties
        rc_int = _reason_value(rc)
        if rc_int != 0:
            logger.warning(f"MQTT connect failed rc={rc_int}")
            return
        logger.info(f"MQTT connected to {self.config.host}:{self.config.port}")
        for pattern in dict.fromkeys(s.pattern for s in self._subscriptions):
            client.subscribe(pattern, qos=self.config.qos)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._connected.set)

    def _on_disconnect(
        self,
        client: Any,
        userdata: Any,
        *args: Any,
    ) -> None:
        del client, userdata
        # paho v1: (rc), paho v2: (disconnect_flags, reason_code, properties)
        rc = args[0] if len(args) == 1 else (args[1] if len(args) >= 2 else None)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._connected.clear)
        logger.warning(f"MQTT disconnected rc={_reason_value(rc)}")

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        del client, userdata
        try:
            envelope = MessageEnvelope.from_json(msg.payload, topic=msg.topic)
        except ValueError as e:
            logger.warning(f"invalid envelope on {msg.topic}: {e}")
            return
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._dispatch, BusMessage(topic=msg.topic, envelope=envelope))

    def _dispatch(self, message: BusMessage) -> None:
        for subscription in list(self._subscriptions):
            if topic_matches(subscription.pattern, message.topic):
                subscription.deliver_nowait(message)
