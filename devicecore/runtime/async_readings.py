"""Consumer of values pushed by the driver outside of any command."""

from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from devicecore.cache import Caches
from devicecore.driver.sdk import DeviceServiceSDK
from devicecore.models.event import AsyncValues, Event
from devicecore.runtime.publisher import EventPublisher
from devicecore.values.codec import command_values_to_event


class AsyncReadingsConsumer:
    """Turns queued AsyncValues into published Events."""

    def __init__(
        self,
        *,
        sdk: DeviceServiceSDK,
        caches: Caches,
        publisher: EventPublisher,
        data_transform: bool = True,
    ) -> None:
        self.sdk = sdk
        self.caches = caches
        self.publisher = publisher
        self.data_transform = data_transform
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def handle(self, values: AsyncValues) -> Event | None:
        device = self.caches.devices.for_name(values.device_name)
        if device is None:
            logger.warning(f"async readings for unknown device {values.device_name} dropped")
            return None
        profile = self.caches.profiles.for_name(device.profile_name)
        if profile is None:
            logger.warning(f"async readings for {device.name} dropped: profile {device.profile_name} not found")
            return None
        event = command_values_to_event(
            values.command_values,
            device,
            profile,
            values.source_name,
            apply_transform=True,
            data_transform=self.data_transform,
        )
        if not event.readings:
            return None
        await self.publisher.send_event(event)
        return event

    async def _consume(self) -> None:
        while True:
            values = await self.sdk.async_values.get()
            try:
                await self.handle(values)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"failed to publish async readings of {values.device_name}: {e}")
