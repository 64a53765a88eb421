"""Protocol driver contract, SDK handle and the simulated driver."""

from devicecore.driver.base import ExtendedProtocolDriver, ProtocolDriver, as_extended
from devicecore.driver.sdk import DeviceServiceSDK
from devicecore.driver.simulated import SimulatedDriver

__all__ = [
    "DeviceServiceSDK",
    "ExtendedProtocolDriver",
    "ProtocolDriver",
    "SimulatedDriver",
    "as_extended",
]
