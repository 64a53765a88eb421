"""Entities mirrored from metadata and the records exchanged with drivers."""

from devicecore.models.device import (
    AdminState,
    AutoEvent,
    Device,
    DeviceService,
    DiscoveredDevice,
    OperatingState,
)
from devicecore.models.event import (
    AsyncValues,
    CommandRequest,
    Event,
    ProfileScanRequest,
    Reading,
)
from devicecore.models.profile import (
    DeviceCommand,
    DeviceProfile,
    DeviceResource,
    ReadWrite,
    ResourceOperation,
    ResourceProperties,
)
from devicecore.models.system_event import SystemEvent, SystemEventAction, SystemEventType
from devicecore.models.watcher import DiscoveredDeviceTemplate, ProvisionWatcher

__all__ = [
    "AdminState",
    "AsyncValues",
    "AutoEvent",
    "CommandRequest",
    "Device",
    "DeviceCommand",
    "DeviceProfile",
    "DeviceResource",
    "DeviceService",
    "DiscoveredDevice",
    "DiscoveredDeviceTemplate",
    "Event",
    "OperatingState",
    "ProfileScanRequest",
    "ProvisionWatcher",
    "ReadWrite",
    "Reading",
    "ResourceOperation",
    "ResourceProperties",
    "SystemEvent",
    "SystemEventAction",
    "SystemEventType",
]
