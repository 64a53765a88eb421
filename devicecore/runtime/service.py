"""Device-service runtime: wires caches, driver, bus and background tasks together."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from devicecore.bus.base import MessageBus
from devicecore.bus.memory import MemoryMessageBus
from devicecore.bus.mqtt import MQTTMessageBus
from devicecore.cache import Caches
from devicecore.clients.metadata import HttpMetadataClient, MemoryMetadataClient, MetadataClient
from devicecore.config.schema import Config, MessageBusConfig, MetadataConfig
from devicecore.driver.base import ProtocolDriver
from devicecore.driver.sdk import DeviceServiceSDK
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import DeviceService
from devicecore.models.event import Event
from devicecore.observability import ServiceMetrics
from devicecore.runtime.async_readings import AsyncReadingsConsumer
from devicecore.runtime.autoevent import AutoEventManager
from devicecore.runtime.commands import BusCommandHandler
from devicecore.runtime.discovery import DiscoveryService
from devicecore.runtime.dispatcher import CommandDispatcher
from devicecore.runtime.failures import FailureTracker
from devicecore.runtime.provision import Provisioner
from devicecore.runtime.publisher import EventPublisher
from devicecore.runtime.reconciler import Reconciler


def create_message_bus(config: MessageBusConfig, *, client_id: str) -> MessageBus:
    kind = config.type.strip().lower()
    if kind == "memory":
        return MemoryMessageBus()
    if kind == "mqtt":
        return MQTTMessageBus(config, client_id=config.client_id or client_id)
    raise EdgeError(ErrorKind.CONTRACT_INVALID, f"unsupported message bus type {config.type!r}")


def create_metadata_client(config: MetadataConfig) -> MetadataClient:
    kind = config.type.strip().lower()
    if kind == "memory":
        return MemoryMetadataClient()
    if kind == "http":
        return HttpMetadataClient(
            base_url=config.base_url,
            api_version=config.api_version,
            timeout_seconds=config.timeout_seconds,
        )
    raise EdgeError(ErrorKind.CONTRACT_INVALID, f"unsupported metadata client type {config.type!r}")


class ServiceRuntime:
    """Owns every runtime component of one device-service instance."""

    def __init__(
        self,
        config: Config,
        driver: ProtocolDriver,
        *,
        bus: MessageBus | None = None,
        metadata: MetadataClient | None = None,
        metrics: ServiceMetrics | None = None,
    ) -> None:
        self.config = config
        self.driver = driver
        self.metrics = metrics or ServiceMetrics()
        self.caches = Caches(metrics=self.metrics)
        self.service = DeviceService(
            name=config.service.name,
            labels=list(config.service.labels),
            description=config.service.description,
        )
        self.bus = bus or create_message_bus(config.message_bus, client_id=config.service.name)
        self.metadata = metadata or create_metadata_client(config.metadata)
        device_cfg = config.device
        prefix = config.message_bus.base_topic_prefix

        self.sdk = DeviceServiceSDK(
            service_name=self.service.name,
            caches=self.caches,
            driver_config=config.driver,
            metrics=self.metrics,
            async_buffer_size=device_cfg.async_buffer_size,
            async_readings_enabled=device_cfg.enable_async_readings,
        )
        self.tracker = FailureTracker()
        self.dispatcher = CommandDispatcher(
            service=self.service,
            caches=self.caches,
            driver=driver,
            config=device_cfg,
            tracker=self.tracker,
            metadata=self.metadata,
            metrics=self.metrics,
        )
        self.publisher = EventPublisher(
            bus=self.bus,
            service_name=self.service.name,
            topic_prefix=prefix,
            max_event_size=config.max_event_size,
            metrics=self.metrics,
        )
        self.autoevents = AutoEventManager(
            caches=self.caches,
            reader=self._auto_event_read,
            publish=self.publisher.send_event,
            pool_size=device_cfg.async_buffer_size,
        )
        self.reconciler = Reconciler(
            service=self.service,
            base_service_name=config.service.base_service_name,
            metadata_service_name=config.message_bus.metadata_service_name,
            caches=self.caches,
            driver=driver,
            metadata=self.metadata,
            dispatcher=self.dispatcher,
            autoevents=self.autoevents,
            metrics=self.metrics,
        )
        self.commands = BusCommandHandler(
            service_name=self.service.name,
            dispatcher=self.dispatcher,
            publisher=self.publisher,
            driver=driver,
        )
        self.async_readings = AsyncReadingsConsumer(
            sdk=self.sdk,
            caches=self.caches,
            publisher=self.publisher,
            data_transform=device_cfg.data_transform,
        )
        self.discovery = DiscoveryService(
            service=self.service,
            caches=self.caches,
            driver=driver,
            sdk=self.sdk,
            metadata=self.metadata,
            config=device_cfg.discovery,
        )
        self.provisioner = Provisioner(
            service_name=self.service.name,
            caches=self.caches,
            metadata=self.metadata,
            timeout_seconds=config.metadata.timeout_seconds,
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Bring the service up; any failure here is fatal to the caller."""
        if self._running:
            return
        prefix = self.config.message_bus.base_topic_prefix
        await self._wait_for_metadata()
        await self._register_service()
        await self._load_caches()
        await self.provisioner.provision(self.config.device)
        for name in self.caches.devices.names():
            self.dispatcher.device_added(name)

        await self.driver.initialize(self.sdk)
        await self.bus.connect()
        await self.reconciler.start(self.bus, prefix)
        await self.commands.start(self.bus, prefix)
        if self.config.device.enable_async_readings:
            await self.async_readings.start()
        await self.discovery.start()
        await self.driver.start()
        self.autoevents.start_all()
        self._running = True
        logger.info(
            f"device service {self.service.name} started with {len(self.caches.devices.names())} devices "
            f"(driver={self.driver.name}, bus={self.bus.name})"
        )

    async def stop(self, force: bool = False) -> None:
        if not self._running:
            return
        self._running = False
        await self.autoevents.stop_all()
        try:
            await self.driver.stop(force)
        except Exception as e:
            logger.error(f"driver {self.driver.name} failed to stop: {e}")
        await self.discovery.stop()
        await self.async_readings.stop()
        await self.commands.stop()
        await self.reconciler.stop()
        await self.dispatcher.stop()
        await self.bus.disconnect()
        await self.metadata.close()
        logger.info(f"device service {self.service.name} stopped")

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "service": self.service.name,
            "admin_state": str(self.service.admin_state),
            "driver": self.driver.name,
            "running": self._running,
            "devices": len(self.caches.devices.names()),
            "profiles": len(self.caches.profiles.all()),
            "provision_watchers": len(self.caches.watchers.all()),
            "discovery_busy": self.discovery.busy,
        }

    async def _auto_event_read(self, device_name: str, source_name: str) -> Event | None:
        return await self.dispatcher.get_command(device_name, source_name, "", True)

    async def _wait_for_metadata(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.service.request_timeout_seconds
        retry = self.config.service.startup_retry_interval_seconds
        while True:
            try:
                await self.metadata.ping()
                return
            except EdgeError as e:
                if loop.time() + retry > deadline:
                    raise EdgeError(
                        ErrorKind.SERVICE_UNAVAILABLE,
                        "metadata service did not become available in time",
                        e,
                    ) from e
                logger.info(f"waiting for metadata service: {e}")
                await asyncio.sleep(retry)

    async def _register_service(self) -> None:
        try:
            existing = await self.metadata.device_service_by_name(self.service.name)
        except EdgeError as e:
            if e.kind != ErrorKind.ENTITY_DOES_NOT_EXIST:
                raise
            await self.metadata.add_device_service(self.service)
            logger.info(f"registered device service {self.service.name}")
            return
        self.service.admin_state = existing.admin_state
        self.service.labels = list(existing.labels) or self.service.labels
        self.service.id = existing.id
        logger.info(f"device service {self.service.name} found in metadata ({self.service.admin_state})")

    async def _load_caches(self) -> None:
        for device in await self.metadata.devices_by_service_name(self.service.name):
            try:
                if device.profile_name and self.caches.profiles.for_name(device.profile_name) is None:
                    self.caches.profiles.add(await self.metadata.device_profile_by_name(device.profile_name))
                self.caches.devices.add(device)
            except EdgeError as e:
                logger.warning(f"device {device.name} not loaded: {e}")
        base = self.config.service.base_service_name
        for watcher in await self.metadata.provision_watchers_by_service_name(base):
            try:
                profile_name = watcher.discovered_device.profile_name
                if profile_name and self.caches.profiles.for_name(profile_name) is None:
                    self.caches.profiles.add(await self.metadata.device_profile_by_name(profile_name))
                self.caches.watchers.add(watcher)
            except EdgeError as e:
                logger.warning(f"provision watcher {watcher.name} not loaded: {e}")
