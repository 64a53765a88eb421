"""Thread-safe mirror of device profiles with per-profile indices."""

from __future__ import annotations

import copy
import re
import threading
from dataclasses import dataclass

from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.profile import DeviceCommand, DeviceProfile, DeviceResource


@dataclass(slots=True)
class _ProfileEntry:
    profile: DeviceProfile
    resources: dict[str, DeviceResource]
    commands: dict[str, DeviceCommand]


def _index(profile: DeviceProfile) -> _ProfileEntry:
    stored = copy.deepcopy(profile)
    return _ProfileEntry(
        profile=stored,
        resources={dr.name: dr for dr in stored.device_resources},
        commands={dc.name: dc for dc in stored.device_commands},
    )


class ProfileCache:
    """Profile registry keyed by name. Lookups return deep copies."""

    def __init__(self, profiles: list[DeviceProfile] | None = None) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, _ProfileEntry] = {}
        for profile in profiles or []:
            self.add(profile)

    def for_name(self, name: str) -> DeviceProfile | None:
        with self._lock:
            entry = self._entries.get(name)
            return copy.deepcopy(entry.profile) if entry else None

    def all(self) -> list[DeviceProfile]:
        with self._lock:
            return [copy.deepcopy(e.profile) for e in self._entries.values()]

    def add(self, profile: DeviceProfile) -> None:
        with self._lock:
            if profile.name in self._entries:
                raise EdgeError(ErrorKind.DUPLICATE_NAME, f"device profile {profile.name} already exists in cache")
            self._entries[profile.name] = _index(profile)

    def update(self, profile: DeviceProfile) -> None:
        with self._lock:
            if profile.name not in self._entries:
                raise EdgeError(
                    ErrorKind.ENTITY_DOES_NOT_EXIST,
                    f"device profile {profile.name} does not exist in cache",
                )
            self._entries[profile.name] = _index(profile)

    def remove_by_name(self, name: str) -> None:
        with self._lock:
            if name not in self._entries:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device profile {name} does not exist in cache")
            del self._entries[name]

    def device_resource(self, profile_name: str, resource_name: str) -> DeviceResource | None:
        with self._lock:
            entry = self._entries.get(profile_name)
            if entry is None:
                return None
            resource = entry.resources.get(resource_name)
            return copy.deepcopy(resource) if resource else None

    def device_command(self, profile_name: str, command_name: str) -> DeviceCommand | None:
        with self._lock:
            entry = self._entries.get(profile_name)
            if entry is None:
                return None
            command = entry.commands.get(command_name)
            return copy.deepcopy(command) if command else None

    def device_resources_by_regex(self, profile_name: str, pattern: str) -> list[DeviceResource]:
        """Resources whose whole name matches ``pattern``.

        Raises:
            re.error: if ``pattern`` does not compile.
        """
        compiled = re.compile(pattern)
        with self._lock:
            entry = self._entries.get(profile_name)
            if entry is None:
                return []
            return [copy.deepcopy(dr) for name, dr in entry.resources.items() if compiled.fullmatch(name)]
