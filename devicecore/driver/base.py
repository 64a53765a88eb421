"""Capability contract implemented by protocol drivers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device
from devicecore.models.event import CommandRequest, ProfileScanRequest
from devicecore.models.profile import DeviceProfile
from devicecore.values.command_value import CommandValue

if TYPE_CHECKING:
    from devicecore.driver.sdk import DeviceServiceSDK

Protocols = dict[str, dict[str, Any]]


class ProtocolDriver(ABC):
    """Abstract driver contract used by the device-service runtime."""

    name: str = "base"

    @abstractmethod
    async def initialize(self, sdk: "DeviceServiceSDK") -> None:
        """Receive the SDK handle (async queues, logger, metrics, driver config)."""

    @abstractmethod
    async def handle_read_commands(
        self,
        device_name: str,
        protocols: Protocols,
        reqs: list[CommandRequest],
    ) -> list[CommandValue]:
        """Read one value per request."""

    @abstractmethod
    async def handle_write_commands(
        self,
        device_name: str,
        protocols: Protocols,
        reqs: list[CommandRequest],
        params: list[CommandValue],
    ) -> None:
        """Write ``params[i]`` for ``reqs[i]``."""

    @abstractmethod
    async def start(self) -> None:
        """Run driver start-up tasks once the runtime is fully initialized."""

    @abstractmethod
    async def stop(self, force: bool) -> None:
        """Shut down gracefully, or immediately when ``force`` is set."""

    @abstractmethod
    async def add_device(self, device_name: str, protocols: Protocols, admin_state: AdminState) -> None:
        """Called after a device owned by this service is added."""

    @abstractmethod
    async def update_device(self, device_name: str, protocols: Protocols, admin_state: AdminState) -> None:
        """Called after a device owned by this service is updated."""

    @abstractmethod
    async def remove_device(self, device_name: str, protocols: Protocols) -> None:
        """Called after a device owned by this service is removed."""

    async def discover(self) -> None:
        """Trigger protocol discovery; results go to the SDK's discovered-devices queue."""
        raise EdgeError(ErrorKind.NOT_IMPLEMENTED, f"{self.name} driver does not implement discovery")

    async def validate_device(self, device: Device) -> None:
        """Raise to reject a device before it is added."""
        del device

    @property
    def supports_discovery(self) -> bool:
        return type(self).discover is not ProtocolDriver.discover


class ExtendedProtocolDriver(ProtocolDriver):
    """Optional capabilities probed at runtime."""

    @abstractmethod
    async def profile_scan(self, req: ProfileScanRequest) -> DeviceProfile:
        """Derive a profile from a live device."""

    @abstractmethod
    async def stop_device_discovery(self, options: dict[str, Any]) -> None:
        """Stop an ongoing discovery."""

    @abstractmethod
    async def stop_profile_scan(self, device_name: str, options: dict[str, Any]) -> None:
        """Stop an ongoing profile scan for ``device_name``."""


def as_extended(driver: ProtocolDriver, operation: str) -> ExtendedProtocolDriver:
    """Return ``driver`` as an extended driver, or raise NotImplemented."""
    if isinstance(driver, ExtendedProtocolDriver):
        return driver
    raise EdgeError(ErrorKind.NOT_IMPLEMENTED, f"{driver.name} driver does not implement {operation}")
