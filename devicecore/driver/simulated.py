"""In-memory driver used for local simulation and tests."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from devicecore.driver.base import ExtendedProtocolDriver, Protocols
from devicecore.driver.sdk import DeviceServiceSDK
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, DiscoveredDevice
from devicecore.models.event import CommandRequest, ProfileScanRequest
from devicecore.models.profile import DeviceProfile, DeviceResource, ReadWrite, ResourceProperties
from devicecore.values.command_value import CommandValue
from devicecore.values.types import ValueType, element_type, is_array, is_float, is_integer


def _zero_value(value_type: ValueType) -> Any:
    if is_array(value_type):
        return []
    if value_type == ValueType.BOOL:
        return False
    if is_integer(value_type):
        return 0
    if is_float(value_type):
        return 0.0
    if value_type == ValueType.BINARY:
        return b""
    if value_type == ValueType.OBJECT:
        return {}
    return ""


class SimulatedDriver(ExtendedProtocolDriver):
    """Stores written values per device/resource and serves them back on reads."""

    name = "simulated"

    def __init__(self, *, discovered: list[DiscoveredDevice] | None = None) -> None:
        self.sdk: DeviceServiceSDK | None = None
        self.values: dict[tuple[str, str], Any] = {}
        self.devices: dict[str, Protocols] = {}
        self.discovered = list(discovered or [])
        self._running = False
        self._discovery_stopped = asyncio.Event()

    async def initialize(self, sdk: DeviceServiceSDK) -> None:
        self.sdk = sdk
        config = sdk.driver_configs()
        for item in config.get("discovered") or []:
            if isinstance(item, dict) and item.get("name"):
                self.discovered.append(
                    DiscoveredDevice(
                        name=str(item["name"]),
                        protocols=dict(item.get("protocols") or {}),
                        description=str(item.get("description") or ""),
                        labels=[str(x) for x in item.get("labels") or []],
                    )
                )

    async def start(self) -> None:
        self._running = True
        if self.sdk:
            for device in self.sdk.devices():
                self.devices.setdefault(device.name, device.protocols)
        logger.info(f"{self.name} driver started with {len(self.devices)} devices")

    async def stop(self, force: bool) -> None:
        del force
        self._running = False

    def set_value(self, device_name: str, resource_name: str, value: Any) -> None:
        self.values[(device_name, resource_name)] = value

    async def handle_read_commands(
        self,
        device_name: str,
        protocols: Protocols,
        reqs: list[CommandRequest],
    ) -> list[CommandValue]:
        del protocols
        results: list[CommandValue] = []
        for req in reqs:
            value = self.values.get((device_name, req.resource_name), _zero_value(req.type))
            results.append(CommandValue.new(req.resource_name, req.type, value))
        return results

    async def handle_write_commands(
        self,
        device_name: str,
        protocols: Protocols,
        reqs: list[CommandRequest],
        params: list[CommandValue],
    ) -> None:
        del protocols
        for req, param in zip(reqs, params):
            self.values[(device_name, req.resource_name)] = param.value

    async def add_device(self, device_name: str, protocols: Protocols, admin_state: AdminState) -> None:
        self.devices[device_name] = dict(protocols)
        logger.debug(f"{self.name} driver added device {device_name} ({admin_state})")

    async def update_device(self, device_name: str, protocols: Protocols, admin_state: AdminState) -> None:
        self.devices[device_name] = dict(protocols)
        logger.debug(f"{self.name} driver updated device {device_name} ({admin_state})")

    async def remove_device(self, device_name: str, protocols: Protocols) -> None:
        del protocols
        self.devices.pop(device_name, None)
        for key in [k for k in self.values if k[0] == device_name]:
            del self.values[key]

    async def discover(self) -> None:
        if self.sdk is None:
            raise EdgeError(ErrorKind.SERVER_ERROR, "driver is not initialized")
        self._discovery_stopped.clear()
        await self.sdk.publish_discovered_devices(self.discovered)

    async def stop_device_discovery(self, options: dict[str, Any]) -> None:
        del options
        self._discovery_stopped.set()

    async def profile_scan(self, req: ProfileScanRequest) -> DeviceProfile:
        resources: list[DeviceResource] = []
        for (device_name, resource_name), value in sorted(self.values.items()):
            if device_name != req.device_name:
                continue
            resources.append(
                DeviceResource(
                    name=resource_name,
                    properties=ResourceProperties(value_type=_infer_type(value), read_write=ReadWrite.RW),
                )
            )
        if not resources:
            raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"no resources found on {req.device_name}")
        return DeviceProfile(name=req.profile_name or f"{req.device_name}-profile", device_resources=resources)

    async def stop_profile_scan(self, device_name: str, options: dict[str, Any]) -> None:
        del options
        logger.debug(f"{self.name} driver has no running profile scan for {device_name}")


def _infer_type(value: Any) -> ValueType:
    if isinstance(value, bool):
        return ValueType.BOOL
    if isinstance(value, int):
        return ValueType.INT64
    if isinstance(value, float):
        return ValueType.FLOAT64
    if isinstance(value, (bytes, bytearray)):
        return ValueType.BINARY
    if isinstance(value, list):
        element = _infer_type(value[0]) if value else ValueType.STRING
        return ValueType.parse(f"{element_type(element)}Array")
    if isinstance(value, dict):
        return ValueType.OBJECT
    return ValueType.STRING
