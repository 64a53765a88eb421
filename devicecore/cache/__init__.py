"""In-memory registries of devices, profiles and provision watchers."""

from __future__ import annotations

from devicecore.cache.devices import DeviceCache
from devicecore.cache.profiles import ProfileCache
from devicecore.cache.watchers import ProvisionWatcherCache
from devicecore.observability import ServiceMetrics


class Caches:
    """Handle bundling the three caches passed to every component."""

    def __init__(
        self,
        *,
        devices: DeviceCache | None = None,
        profiles: ProfileCache | None = None,
        watchers: ProvisionWatcherCache | None = None,
        metrics: ServiceMetrics | None = None,
    ) -> None:
        self.devices = devices or DeviceCache(metrics=metrics)
        self.profiles = profiles or ProfileCache()
        self.watchers = watchers or ProvisionWatcherCache()

    def check_profile_not_used(self, profile_name: str) -> bool:
        """True when no cached device or watcher references ``profile_name``."""
        for device in self.devices.all():
            if device.profile_name == profile_name:
                return False
        for watcher in self.watchers.all():
            if watcher.discovered_device.profile_name == profile_name:
                return False
        return True


__all__ = ["Caches", "DeviceCache", "ProfileCache", "ProvisionWatcherCache"]
