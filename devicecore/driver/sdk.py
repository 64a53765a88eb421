"""Handle given to drivers at initialization."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from devicecore.cache import Caches
from devicecore.models.device import Device, DiscoveredDevice
from devicecore.models.event import AsyncValues
from devicecore.models.profile import DeviceProfile
from devicecore.observability import ServiceMetrics
from devicecore.values.command_value import CommandValue


class DeviceServiceSDK:
    """Queues, config and read-only cache access exposed to a ProtocolDriver."""

    def __init__(
        self,
        *,
        service_name: str,
        caches: Caches,
        driver_config: dict[str, Any] | None = None,
        metrics: ServiceMetrics | None = None,
        async_buffer_size: int = 16,
        async_readings_enabled: bool = True,
    ) -> None:
        self.service_name = service_name
        self.caches = caches
        self.metrics = metrics or ServiceMetrics()
        self.async_readings_enabled = bool(async_readings_enabled)
        self._driver_config = dict(driver_config or {})
        size = max(1, int(async_buffer_size))
        self.async_values: asyncio.Queue[AsyncValues] = asyncio.Queue(maxsize=size)
        self.discovered_devices: asyncio.Queue[list[DiscoveredDevice]] = asyncio.Queue(maxsize=size)
        self.logger = logger.bind(service=service_name)

    def driver_configs(self) -> dict[str, Any]:
        return dict(self._driver_config)

    async def send_async_values(self, device_name: str, source_name: str, values: list[CommandValue]) -> None:
        """Queue readings produced outside a command; blocks while the queue is full."""
        if not self.async_readings_enabled:
            logger.debug(f"async readings disabled, dropping values for {device_name}/{source_name}")
            return
        await self.async_values.put(
            AsyncValues(device_name=device_name, source_name=source_name, command_values=list(values))
        )

    async def publish_discovered_devices(self, devices: list[DiscoveredDevice]) -> None:
        await self.discovered_devices.put(list(devices))

    def devices(self) -> list[Device]:
        return self.caches.devices.all()

    def get_device_by_name(self, name: str) -> Device | None:
        return self.caches.devices.for_name(name)

    def get_profile_by_name(self, name: str) -> DeviceProfile | None:
        return self.caches.profiles.for_name(name)
