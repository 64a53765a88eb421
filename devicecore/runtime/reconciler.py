"""Applies metadata system events to the caches, the driver and AutoEvents."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Awaitable, Callable

from loguru import logger

from devicecore.bus.base import BusMessage, MessageBus, pump
from devicecore.bus.topics import system_event_subscriptions
from devicecore.cache import Caches
from devicecore.clients.metadata import MetadataClient
from devicecore.driver.base import ProtocolDriver
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device, DeviceService
from devicecore.models.profile import DeviceProfile
from devicecore.models.system_event import SystemEvent, SystemEventAction, SystemEventType
from devicecore.models.watcher import ProvisionWatcher
from devicecore.observability import ServiceMetrics
from devicecore.runtime.autoevent import AutoEventManager
from devicecore.runtime.dispatcher import CommandDispatcher

Handler = Callable[[SystemEvent], Awaitable[None]]


class Reconciler:
    """Consumes system events published by metadata and mirrors them locally."""

    def __init__(
        self,
        *,
        service: DeviceService,
        base_service_name: str,
        metadata_service_name: str,
        caches: Caches,
        driver: ProtocolDriver,
        metadata: MetadataClient,
        dispatcher: CommandDispatcher,
        autoevents: AutoEventManager,
        metrics: ServiceMetrics | None = None,
    ) -> None:
        self.service = service
        self.base_service_name = base_service_name or service.name
        self.metadata_service_name = metadata_service_name
        self.caches = caches
        self.driver = driver
        self.metadata = metadata
        self.dispatcher = dispatcher
        self.autoevents = autoevents
        self.metrics = metrics or ServiceMetrics()
        self._tasks: list[asyncio.Task[None]] = []
        self._handlers: dict[tuple[str, str], Handler] = {
            (SystemEventType.DEVICE, SystemEventAction.ADD): self._device_added,
            (SystemEventType.DEVICE, SystemEventAction.UPDATE): self._device_updated,
            (SystemEventType.DEVICE, SystemEventAction.DELETE): self._device_deleted,
            (SystemEventType.DEVICE_PROFILE, SystemEventAction.ADD): self._profile_added,
            (SystemEventType.DEVICE_PROFILE, SystemEventAction.UPDATE): self._profile_updated,
            (SystemEventType.DEVICE_PROFILE, SystemEventAction.DELETE): self._profile_deleted,
            (SystemEventType.PROVISION_WATCHER, SystemEventAction.ADD): self._watcher_added,
            (SystemEventType.PROVISION_WATCHER, SystemEventAction.UPDATE): self._watcher_updated,
            (SystemEventType.PROVISION_WATCHER, SystemEventAction.DELETE): self._watcher_deleted,
            (SystemEventType.DEVICE_SERVICE, SystemEventAction.UPDATE): self._service_updated,
        }

    async def start(self, bus: MessageBus, topic_prefix: str) -> None:
        patterns = system_event_subscriptions(
            topic_prefix,
            self.service.name,
            self.base_service_name,
            self.metadata_service_name,
        )
        for pattern in patterns:
            subscription = await bus.subscribe(pattern)
            self._tasks.append(
                asyncio.create_task(pump(subscription, self.handle_message, label="system event"))
            )
            logger.info(f"reconciler subscribed to {pattern}")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def handle_message(self, message: BusMessage) -> None:
        correlation_id = message.envelope.correlation_id
        payload = message.envelope.payload
        try:
            if isinstance(payload, str):
                payload = json.loads(payload)
            event = SystemEvent.from_dict(payload)
        except ValueError as e:
            self.metrics.record_system_event(success=False)
            logger.warning(f"invalid system event on {message.topic} correlation-id={correlation_id}: {e}")
            return
        try:
            applied = await self.apply(event)
        except Exception as e:
            self.metrics.record_system_event(success=False)
            logger.error(
                f"failed to apply system event {event.type}/{event.action} "
                f"correlation-id={correlation_id}: {e}"
            )
            return
        if applied:
            self.metrics.record_system_event(success=True)
            logger.debug(f"applied system event {event.type}/{event.action} correlation-id={correlation_id}")

    def accepts(self, event: SystemEvent) -> bool:
        if event.owner in (self.service.name, self.base_service_name):
            return True
        return (
            event.type == SystemEventType.DEVICE_PROFILE
            and event.action == SystemEventAction.DELETE
            and event.owner == self.metadata_service_name
        )

    async def apply(self, event: SystemEvent) -> bool:
        """Apply one event; returns False when it is ignored."""
        if not self.accepts(event):
            logger.debug(f"ignoring system event {event.type}/{event.action} owned by {event.owner}")
            return False
        handler = self._handlers.get((event.type, event.action))
        if handler is None:
            logger.debug(f"no handler for system event {event.type}/{event.action}")
            return False
        await handler(event)
        return True

    async def ensure_profile(self, profile_name: str) -> DeviceProfile:
        profile = await self.metadata.device_profile_by_name(profile_name)
        if self.caches.profiles.for_name(profile.name) is None:
            self.caches.profiles.add(profile)
        else:
            self.caches.profiles.update(profile)
        return profile

    async def _device_added(self, event: SystemEvent) -> None:
        device = Device.from_dict(event.details_dict())
        await self._add_device(device)

    async def _add_device(self, device: Device) -> None:
        if device.profile_name:
            await self.ensure_profile(device.profile_name)
        if self.caches.devices.for_name(device.name) is not None:
            logger.debug(f"device {device.name} already cached, applying as update")
            self.caches.devices.update(device)
            await self.driver.update_device(device.name, device.protocols, device.admin_state)
        else:
            self.caches.devices.add(device)
            await self.driver.add_device(device.name, device.protocols, device.admin_state)
        self.dispatcher.device_added(device.name)
        self.autoevents.restart_for_device(device.name)
        logger.info(f"device {device.name} added")

    async def _device_updated(self, event: SystemEvent) -> None:
        device = Device.from_dict(event.details_dict())
        cached = self.caches.devices.for_name(device.name)
        if device.service_name and device.service_name != self.service.name:
            if cached is not None:
                logger.info(f"device {device.name} moved to service {device.service_name}")
                await self._remove_device(cached)
            return
        if cached is None:
            await self._add_device(device)
            return
        if device.profile_name:
            await self.ensure_profile(device.profile_name)
        self.caches.devices.update(device)
        await self.driver.update_device(device.name, device.protocols, device.admin_state)
        if device.admin_state == AdminState.LOCKED:
            self.autoevents.stop_for_device(device.name)
        else:
            self.autoevents.restart_for_device(device.name)
        logger.info(f"device {device.name} updated")

    async def _device_deleted(self, event: SystemEvent) -> None:
        device = Device.from_dict(event.details_dict())
        cached = self.caches.devices.for_name(device.name)
        if cached is None:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {device.name} is not cached")
        await self._remove_device(cached)

    async def _remove_device(self, device: Device) -> None:
        self.autoevents.stop_for_device(device.name)
        self.caches.devices.remove_by_name(device.name)
        await self.driver.remove_device(device.name, device.protocols)
        await self.dispatcher.device_removed(device.name)
        logger.info(f"device {device.name} removed")

    async def _profile_added(self, event: SystemEvent) -> None:
        # Profiles are fetched on demand when a device or watcher refers to them.
        del event

    async def _profile_updated(self, event: SystemEvent) -> None:
        profile = DeviceProfile.from_dict(event.details_dict())
        if self.caches.profiles.for_name(profile.name) is None:
            logger.debug(f"profile {profile.name} is not used by this service")
            return
        self.caches.profiles.update(profile)
        for device in self.caches.devices.all():
            if device.profile_name != profile.name:
                continue
            await self.driver.update_device(device.name, device.protocols, device.admin_state)
            self.autoevents.restart_for_device(device.name)
        logger.info(f"profile {profile.name} updated")

    async def _profile_deleted(self, event: SystemEvent) -> None:
        profile = DeviceProfile.from_dict(event.details_dict())
        if self.caches.profiles.for_name(profile.name) is None:
            return
        if not self.caches.check_profile_not_used(profile.name):
            logger.warning(f"profile {profile.name} is still in use, not removed")
            return
        self.caches.profiles.remove_by_name(profile.name)
        logger.info(f"profile {profile.name} removed")

    async def _watcher_added(self, event: SystemEvent) -> None:
        watcher = ProvisionWatcher.from_dict(event.details_dict())
        await self._store_watcher(watcher)

    async def _watcher_updated(self, event: SystemEvent) -> None:
        watcher = ProvisionWatcher.from_dict(event.details_dict())
        await self._store_watcher(watcher)

    async def _store_watcher(self, watcher: ProvisionWatcher) -> None:
        if watcher.discovered_device.profile_name:
            await self.ensure_profile(watcher.discovered_device.profile_name)
        if self.caches.watchers.for_name(watcher.name) is None:
            self.caches.watchers.add(watcher)
            logger.info(f"provision watcher {watcher.name} added")
        else:
            self.caches.watchers.update(watcher)
            logger.info(f"provision watcher {watcher.name} updated")

    async def _watcher_deleted(self, event: SystemEvent) -> None:
        watcher = ProvisionWatcher.from_dict(event.details_dict())
        self.caches.watchers.remove_by_name(watcher.name)
        logger.info(f"provision watcher {watcher.name} removed")

    async def _service_updated(self, event: SystemEvent) -> None:
        update = DeviceService.from_dict(event.details_dict())
        if update.name != self.service.name:
            return
        self.service.admin_state = update.admin_state
        self.service.labels = list(update.labels)
        if update.description:
            self.service.description = update.description
        logger.info(f"device service {self.service.name} is {self.service.admin_state}")
