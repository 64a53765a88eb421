"""Message bus contract shared by the MQTT and in-memory implementations."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from devicecore.bus.envelope import MessageEnvelope

_SENTINEL = object()


@dataclass(slots=True)
class BusMessage:
    topic: str
    envelope: MessageEnvelope


class Subscription:
    """Bounded queue of messages delivered for one topic pattern."""

    def __init__(
        self,
        pattern: str,
        *,
        maxsize: int = 0,
        on_close: Callable[["Subscription"], None] | None = None,
    ) -> None:
        self.pattern = pattern
        self._queue: asyncio.Queue[BusMessage | object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver_nowait(self, message: BusMessage) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"subscription {self.pattern} queue is full, dropping {message.topic}")

    async def deliver(self, message: BusMessage) -> None:
        if not self._closed:
            await self._queue.put(message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)
        # Unblock a consumer waiting on an empty queue.
        while True:
            try:
                self._queue.put_nowait(_SENTINEL)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[BusMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BusMessage]:
        while True:
            item = await self._queue.get()
            if item is _SENTINEL:
                break
            yield item  # type: ignore[misc]


class MessageBus(ABC):
    """Publish/subscribe transport for envelopes."""

    name: str = "base"

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport and every open subscription."""

    @abstractmethod
    async def publish(self, topic: str, envelope: MessageEnvelope) -> None:
        """Publish ``envelope`` on ``topic``."""

    @abstractmethod
    async def subscribe(self, pattern: str) -> Subscription:
        """Return a subscription receiving messages whose topic matches ``pattern``."""


async def pump(
    subscription: Subscription,
    handler: Callable[[BusMessage], Awaitable[None]],
    *,
    label: str,
) -> None:
    """Feed every message of ``subscription`` to ``handler``; a failing message never ends the loop."""
    async for message in subscription:
        try:
            await handler(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"{label} failed on {message.topic} correlation-id={message.envelope.correlation_id}: {e}"
            )
