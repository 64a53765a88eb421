"""Core-metadata client: the registry this service mirrors into its caches."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx
from loguru import logger

from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import Device, DeviceService, OperatingState
from devicecore.models.profile import DeviceProfile
from devicecore.models.watcher import ProvisionWatcher

JsonRequester = Callable[[str, str, Any, float], Awaitable[tuple[int, Any]]]


class MetadataClient(ABC):
    """Operations the runtime needs from the metadata registry."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise ServiceUnavailable when metadata is not reachable."""

    @abstractmethod
    async def device_service_by_name(self, name: str) -> DeviceService: ...

    @abstractmethod
    async def add_device_service(self, service: DeviceService) -> None: ...

    @abstractmethod
    async def update_device_service(self, service: DeviceService) -> None: ...

    @abstractmethod
    async def devices_by_service_name(self, service_name: str) -> list[Device]: ...

    @abstractmethod
    async def device_by_name(self, name: str) -> Device: ...

    @abstractmethod
    async def add_device(self, device: Device) -> None: ...

    @abstractmethod
    async def update_device(self, device: Device) -> None: ...

    @abstractmethod
    async def update_device_operating_state(self, name: str, state: OperatingState) -> None: ...

    @abstractmethod
    async def device_profile_by_name(self, name: str) -> DeviceProfile: ...

    @abstractmethod
    async def add_device_profile(self, profile: DeviceProfile) -> None: ...

    @abstractmethod
    async def provision_watchers_by_service_name(self, service_name: str) -> list[ProvisionWatcher]: ...

    @abstractmethod
    async def add_provision_watcher(self, watcher: ProvisionWatcher) -> None: ...

    async def close(self) -> None:
        return None


def _error_for_status(status: int, what: str, body: Any) -> EdgeError:
    message = ""
    if isinstance(body, dict):
        message = str(body.get("message") or "")
    text = f"{what}: {message}" if message else what
    if status == 404:
        return EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, text)
    if status == 409:
        return EdgeError(ErrorKind.DUPLICATE_NAME, text)
    if status == 400:
        return EdgeError(ErrorKind.CONTRACT_INVALID, text)
    if status == 423:
        return EdgeError(ErrorKind.SERVICE_LOCKED, text)
    if status == 503:
        return EdgeError(ErrorKind.SERVICE_UNAVAILABLE, text)
    return EdgeError(ErrorKind.SERVER_ERROR, f"{text} (status {status})")


class HttpMetadataClient(MetadataClient):
    """REST client for the core-metadata v3 API."""

    def __init__(
        self,
        *,
        base_url: str = "http://localhost:59881",
        api_version: str = "v3",
        timeout_seconds: float = 5.0,
        requester: JsonRequester | None = None,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.api_version = str(api_version or "v3").strip()
        self.timeout_seconds = max(0.2, float(timeout_seconds))
        self._requester = requester or self._http_request_json

    async def ping(self) -> None:
        await self._call("GET", "/ping", what="metadata ping")

    async def device_service_by_name(self, name: str) -> DeviceService:
        body = await self._call("GET", f"/deviceservice/name/{quote(name, safe='')}", what=f"device service {name}")
        return DeviceService.from_dict(_field(body, "service"))

    async def add_device_service(self, service: DeviceService) -> None:
        await self._call_multi("POST", "/deviceservice", "service", service.to_dict(), what=f"device service {service.name}")

    async def update_device_service(self, service: DeviceService) -> None:
        await self._call_multi("PATCH", "/deviceservice", "service", service.to_dict(), what=f"device service {service.name}")

    async def devices_by_service_name(self, service_name: str) -> list[Device]:
        body = await self._call(
            "GET",
            f"/device/service/name/{quote(service_name, safe='')}?limit=-1",
            what=f"devices of {service_name}",
        )
        return [Device.from_dict(d) for d in _list_field(body, "devices")]

    async def device_by_name(self, name: str) -> Device:
        body = await self._call("GET", f"/device/name/{quote(name, safe='')}", what=f"device {name}")
        return Device.from_dict(_field(body, "device"))

    async def add_device(self, device: Device) -> None:
        await self._call_multi("POST", "/device", "device", device.to_dict(), what=f"device {device.name}")

    async def update_device(self, device: Device) -> None:
        await self._call_multi("PATCH", "/device", "device", device.to_dict(), what=f"device {device.name}")

    async def update_device_operating_state(self, name: str, state: OperatingState) -> None:
        await self._call_multi(
            "PATCH",
            "/device",
            "device",
            {"name": name, "operatingState": str(state)},
            what=f"device {name}",
        )

    async def device_profile_by_name(self, name: str) -> DeviceProfile:
        body = await self._call("GET", f"/deviceprofile/name/{quote(name, safe='')}", what=f"device profile {name}")
        return DeviceProfile.from_dict(_field(body, "profile"))

    async def add_device_profile(self, profile: DeviceProfile) -> None:
        await self._call_multi("POST", "/deviceprofile", "profile", profile.to_dict(), what=f"device profile {profile.name}")

    async def provision_watchers_by_service_name(self, service_name: str) -> list[ProvisionWatcher]:
        body = await self._call(
            "GET",
            f"/provisionwatcher/service/name/{quote(service_name, safe='')}?limit=-1",
            what=f"provision watchers of {service_name}",
        )
        return [ProvisionWatcher.from_dict(w) for w in _list_field(body, "provisionWatchers")]

    async def add_provision_watcher(self, watcher: ProvisionWatcher) -> None:
        await self._call_multi(
            "POST",
            "/provisionwatcher",
            "provisionWatcher",
            watcher.to_dict(),
            what=f"provision watcher {watcher.name}",
        )

    def _full_url(self, path: str) -> str:
        return f"{self.base_url}/api/{self.api_version}{path}"

    async def _call(self, method: str, path: str, *, what: str, body: Any = None) -> Any:
        status, data = await self._requester(method, self._full_url(path), body, self.timeout_seconds)
        if status >= 400:
            raise _error_for_status(status, what, data)
        return data

    async def _call_multi(self, method: str, path: str, key: str, entity: dict[str, Any], *, what: str) -> None:
        """Send a one-element batch request and raise on its per-item status."""
        payload = [{"apiVersion": self.api_version, key: entity}]
        data = await self._call(method, path, what=what, body=payload)
        items = data if isinstance(data, list) else []
        for item in items:
            if not isinstance(item, dict):
                continue
            status = int(item.get("statusCode") or 200)
            if status >= 400:
                raise _error_for_status(status, what, item)

    async def _http_request_json(
        self,
        method: str,
        url: str,
        body: Any,
        timeout_seconds: float,
    ) -> tuple[int, Any]:
        try:
            async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                resp = await client.request(method, url, json=body)
        except httpx.HTTPError as e:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, f"metadata request {method} {url} failed", e) from e
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            logger.debug(f"metadata returned non-JSON body for {method} {url}")
            data = {}
        return resp.status_code, data


def _field(body: Any, key: str) -> dict[str, Any]:
    value = body.get(key) if isinstance(body, dict) else None
    if not isinstance(value, dict):
        raise EdgeError(ErrorKind.SERVER_ERROR, f"metadata response has no {key!r} object")
    return value


def _list_field(body: Any, key: str) -> list[dict[str, Any]]:
    value = body.get(key) if isinstance(body, dict) else None
    return [x for x in value or [] if isinstance(x, dict)]


class MemoryMetadataClient(MetadataClient):
    """Metadata registry held in process memory; records every write."""

    def __init__(
        self,
        *,
        services: list[DeviceService] | None = None,
        devices: list[Device] | None = None,
        profiles: list[DeviceProfile] | None = None,
        watchers: list[ProvisionWatcher] | None = None,
    ) -> None:
        self.services = {s.name: copy.deepcopy(s) for s in services or []}
        self.devices = {d.name: copy.deepcopy(d) for d in devices or []}
        self.profiles = {p.name: copy.deepcopy(p) for p in profiles or []}
        self.watchers = {w.name: copy.deepcopy(w) for w in watchers or []}
        self.added_devices: list[Device] = []
        self.updated_devices: list[Device] = []
        self.operating_state_updates: list[tuple[str, OperatingState]] = []
        self.added_profiles: list[DeviceProfile] = []
        self.available = True

    async def ping(self) -> None:
        if not self.available:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, "metadata is not available")

    async def device_service_by_name(self, name: str) -> DeviceService:
        return copy.deepcopy(self._get(self.services, name, "device service"))

    async def add_device_service(self, service: DeviceService) -> None:
        self._put_new(self.services, service.name, service, "device service")

    async def update_device_service(self, service: DeviceService) -> None:
        self._get(self.services, service.name, "device service")
        self.services[service.name] = copy.deepcopy(service)

    async def devices_by_service_name(self, service_name: str) -> list[Device]:
        return [copy.deepcopy(d) for d in self.devices.values() if d.service_name == service_name]

    async def device_by_name(self, name: str) -> Device:
        return copy.deepcopy(self._get(self.devices, name, "device"))

    async def add_device(self, device: Device) -> None:
        self._put_new(self.devices, device.name, device, "device")
        self.added_devices.append(copy.deepcopy(device))

    async def update_device(self, device: Device) -> None:
        self._get(self.devices, device.name, "device")
        self.devices[device.name] = copy.deepcopy(device)
        self.updated_devices.append(copy.deepcopy(device))

    async def update_device_operating_state(self, name: str, state: OperatingState) -> None:
        self._get(self.devices, name, "device").operating_state = state
        self.operating_state_updates.append((name, state))

    async def device_profile_by_name(self, name: str) -> DeviceProfile:
        return copy.deepcopy(self._get(self.profiles, name, "device profile"))

    async def add_device_profile(self, profile: DeviceProfile) -> None:
        self._put_new(self.profiles, profile.name, profile, "device profile")
        self.added_profiles.append(copy.deepcopy(profile))

    async def provision_watchers_by_service_name(self, service_name: str) -> list[ProvisionWatcher]:
        return [copy.deepcopy(w) for w in self.watchers.values() if w.service_name == service_name]

    async def add_provision_watcher(self, watcher: ProvisionWatcher) -> None:
        self._put_new(self.watchers, watcher.name, watcher, "provision watcher")

    def _get(self, table: dict[str, Any], name: str, what: str) -> Any:
        if not self.available:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, "metadata is not available")
        entity = table.get(name)
        if entity is None:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"{what} {name} does not exist")
        return entity

    def _put_new(self, table: dict[str, Any], name: str, entity: Any, what: str) -> None:
        if not self.available:
            raise EdgeError(ErrorKind.SERVICE_UNAVAILABLE, "metadata is not available")
        if name in table:
            raise EdgeError(ErrorKind.DUPLICATE_NAME, f"{what} {name} already exists")
        table[name] = copy.deepcopy(entity)
