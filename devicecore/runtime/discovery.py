"""Device discovery: watcher matching, the discovered-device pipeline and profile scans."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import re
import uuid
from typing import Any

from loguru import logger

from devicecore.cache import Caches
from devicecore.clients.metadata import MetadataClient
from devicecore.config.schema import DiscoveryConfig
from devicecore.driver.base import ProtocolDriver, as_extended
from devicecore.driver.sdk import DeviceServiceSDK
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device, DeviceService, DiscoveredDevice, OperatingState
from devicecore.models.event import ProfileScanRequest
from devicecore.models.watcher import ProvisionWatcher


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _identifiers_match(properties: dict[str, Any], identifiers: dict[str, str]) -> bool:
    for name, pattern in identifiers.items():
        text = _as_text(properties.get(name))
        if not text:
            return False
        try:
            if re.search(pattern, text) is None:
                return False
        except re.error as e:
            logger.warning(f"invalid identifier pattern {pattern!r} for {name}: {e}")
            return False
    return True


def _is_blocked(protocols: dict[str, dict[str, Any]], blocking: dict[str, list[str]]) -> bool:
    for name, literals in blocking.items():
        for properties in protocols.values():
            if name in properties and _as_text(properties[name]) in literals:
                return True
    return False


def match_watcher(device: DiscoveredDevice, watcher: ProvisionWatcher) -> bool:
    """True when ``watcher`` is unlocked, allows ``device`` and does not block it."""
    if watcher.admin_state == AdminState.LOCKED:
        return False
    if not any(_identifiers_match(props, watcher.identifiers) for props in device.protocols.values()):
        return False
    return not _is_blocked(device.protocols, watcher.blocking_identifiers)


def find_matching_watcher(device: DiscoveredDevice, watchers: list[ProvisionWatcher]) -> ProvisionWatcher | None:
    for watcher in watchers:
        if match_watcher(device, watcher):
            return watcher
    return None


def device_from_watcher(device: DiscoveredDevice, watcher: ProvisionWatcher, service_name: str) -> Device:
    template = watcher.discovered_device
    return Device(
        name=device.name,
        profile_name=template.profile_name,
        service_name=service_name,
        admin_state=template.admin_state,
        operating_state=OperatingState.UP,
        protocols=copy.deepcopy(device.protocols),
        labels=list(device.labels),
        auto_events=copy.deepcopy(template.auto_events),
        properties=copy.deepcopy(template.properties),
        description=device.description,
    )


class DiscoveryService:
    """Single-flight discovery, the periodic discovery loop and per-device profile scans."""

    def __init__(
        self,
        *,
        service: DeviceService,
        caches: Caches,
        driver: ProtocolDriver,
        sdk: DeviceServiceSDK,
        metadata: MetadataClient,
        config: DiscoveryConfig,
    ) -> None:
        self.service = service
        self.caches = caches
        self.driver = driver
        self.sdk = sdk
        self.metadata = metadata
        self.config = config
        self._running = False
        self._discovery_task: asyncio.Task[None] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._scans: dict[str, asyncio.Task[None]] = {}
        self._request_id = ""

    @property
    def busy(self) -> bool:
        return self._discovery_task is not None and not self._discovery_task.done()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._consumer_task = asyncio.create_task(self._consume_discovered())
        interval = self.config.interval_seconds
        if self.config.enabled and interval > 0 and self.driver.supports_discovery:
            self._loop_task = asyncio.create_task(self._periodic_loop(interval))
            logger.info(f"auto discovery every {interval}s")

    async def stop(self) -> None:
        self._running = False
        tasks = [self._loop_task, self._consumer_task, self._discovery_task, *self._scans.values()]
        for task in tasks:
            if task is not None:
                task.cancel()
        for task in tasks:
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._consumer_task = None
        self._discovery_task = None
        self._scans.clear()

    def trigger_discovery(self) -> str:
        """Start a discovery run in the background and return its request id."""
        if self.service.admin_state == AdminState.LOCKED:
            raise EdgeError(ErrorKind.SERVICE_LOCKED, f"service {self.service.name} is locked")
        if not self.config.enabled:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, "device discovery is disabled")
        if not self.driver.supports_discovery:
            raise EdgeError(ErrorKind.NOT_IMPLEMENTED, f"{self.driver.name} driver does not implement discovery")
        if self.busy:
            raise EdgeError(ErrorKind.STATUS_CONFLICT, "another device discovery is in progress")
        self._request_id = str(uuid.uuid4())
        self._discovery_task = asyncio.create_task(self._run_discovery(self._request_id))
        return self._request_id

    async def stop_discovery(self, request_id: str = "", options: dict[str, Any] | None = None) -> None:
        extended = as_extended(self.driver, "stop device discovery")
        if request_id and request_id != self._request_id:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"discovery request {request_id} not found")
        await extended.stop_device_discovery(dict(options or {}))

    async def process_discovered(self, devices: list[DiscoveredDevice]) -> list[Device]:
        """Add every discovered device matched by a watcher to metadata."""
        added: list[Device] = []
        watchers = self.caches.watchers.all()
        for discovered in devices:
            if self.caches.devices.for_name(discovered.name) is not None:
                logger.debug(f"discovered device {discovered.name} already exists")
                continue
            watcher = find_matching_watcher(discovered, watchers)
            if watcher is None:
                logger.debug(f"discovered device {discovered.name} matches no provision watcher")
                continue
            device = device_from_watcher(discovered, watcher, self.service.name)
            try:
                await self.driver.validate_device(device)
            except Exception as e:
                logger.warning(f"discovered device {device.name} failed validation: {e}")
                continue
            try:
                await self.metadata.add_device(device)
            except EdgeError as e:
                logger.warning(f"failed to add discovered device {device.name}: {e}")
                continue
            logger.info(f"discovered device {device.name} added by watcher {watcher.name}")
            added.append(device)
        return added

    def profile_scan(self, req: ProfileScanRequest) -> str:
        """Start a background profile scan for ``req.device_name`` and return its request id."""
        if not req.device_name:
            raise EdgeError(ErrorKind.CONTRACT_INVALID, "deviceName is required")
        if self.service.admin_state == AdminState.LOCKED:
            raise EdgeError(ErrorKind.SERVICE_LOCKED, f"service {self.service.name} is locked")
        existing = self._scans.get(req.device_name)
        if existing is not None and not existing.done():
            raise EdgeError(ErrorKind.STATUS_CONFLICT, f"profile scan of {req.device_name} is in progress")
        device = self.caches.devices.for_name(req.device_name)
        if device is None:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {req.device_name} not found")
        extended = as_extended(self.driver, "profile scan")
        req.protocols = copy.deepcopy(device.protocols)
        self._scans[req.device_name] = asyncio.create_task(self._run_profile_scan(extended, req))
        return req.request_id

    async def stop_profile_scan(self, device_name: str, options: dict[str, Any] | None = None) -> None:
        extended = as_extended(self.driver, "stop profile scan")
        if self.caches.devices.for_name(device_name) is None:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {device_name} not found")
        await extended.stop_profile_scan(device_name, dict(options or {}))

    async def _run_discovery(self, request_id: str) -> None:
        logger.info(f"device discovery {request_id} started")
        try:
            await self.driver.discover()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"device discovery {request_id} failed: {e}")
            return
        logger.info(f"device discovery {request_id} finished")

    async def _periodic_loop(self, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                self.trigger_discovery()
            except EdgeError as e:
                logger.debug(f"periodic discovery skipped: {e}")

    async def _consume_discovered(self) -> None:
        while self._running:
            devices = await self.sdk.discovered_devices.get()
            try:
                await self.process_discovered(devices)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"failed to process discovered devices: {e}")

    async def _run_profile_scan(self, extended: Any, req: ProfileScanRequest) -> None:
        try:
            profile = await extended.profile_scan(req)
            if req.profile_name:
                profile.name = req.profile_name
            await self.metadata.add_device_profile(profile)
            if self.caches.profiles.for_name(profile.name) is None:
                self.caches.profiles.add(profile)
            else:
                self.caches.profiles.update(profile)
            device = self.caches.devices.for_name(req.device_name)
            if device is None:
                logger.warning(f"device {req.device_name} removed during profile scan")
                return
            device.profile_name = profile.name
            await self.metadata.update_device(device)
            self.caches.devices.update(device)
            logger.info(f"profile scan of {req.device_name} produced profile {profile.name}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"profile scan {req.request_id} of {req.device_name} failed: {e}")
        finally:
            if self._scans.get(req.device_name) is asyncio.current_task():
                self._scans.pop(req.device_name, None)
