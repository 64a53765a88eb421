"""Thread-safe mirror of the devices owned by this service."""

from __future__ import annotations

import copy
import threading

from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState, Device, OperatingState
from devicecore.observability import ServiceMetrics, last_connected_gauge_name
from devicecore.utils.helpers import now_ns


def parse_admin_state(state: AdminState | str) -> AdminState:
    try:
        return AdminState.parse(state)
    except ValueError as e:
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"invalid admin state {state!r}", e) from e


class DeviceCache:
    """Device registry keyed by name. Lookups return deep copies."""

    def __init__(self, devices: list[Device] | None = None, *, metrics: ServiceMetrics | None = None) -> None:
        self._lock = threading.RLock()
        self._devices: dict[str, Device] = {}
        self._last_connected: dict[str, int] = {}
        self._metrics = metrics
        for device in devices or []:
            self.add(device)

    def for_name(self, name: str) -> Device | None:
        with self._lock:
            device = self._devices.get(name)
            if device is None:
                return None
            snapshot = copy.deepcopy(device)
            snapshot.last_connected = self._last_connected.get(name, snapshot.last_connected)
            return snapshot

    def all(self) -> list[Device]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._devices.values()]

    def names(self) -> list[str]:
        with self._lock:
            return list(self._devices)

    def add(self, device: Device) -> None:
        with self._lock:
            if device.name in self._devices:
                raise EdgeError(ErrorKind.DUPLICATE_NAME, f"device {device.name} already exists in cache")
            self._devices[device.name] = copy.deepcopy(device)
            self._last_connected[device.name] = device.last_connected
            if self._metrics is not None:
                self._metrics.register_gauge(last_connected_gauge_name(device.name), device.last_connected)

    def update(self, device: Device) -> None:
        with self._lock:
            if device.name not in self._devices:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {device.name} does not exist in cache")
            self._devices[device.name] = copy.deepcopy(device)

    def remove_by_name(self, name: str) -> None:
        with self._lock:
            if name not in self._devices:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {name} does not exist in cache")
            del self._devices[name]
            self._last_connected.pop(name, None)
            if self._metrics is not None:
                self._metrics.unregister_gauge(last_connected_gauge_name(name))

    def update_admin_state(self, name: str, state: AdminState | str) -> None:
        admin_state = parse_admin_state(state)
        with self._lock:
            device = self._devices.get(name)
            if device is None:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {name} does not exist in cache")
            device.admin_state = admin_state

    def update_operating_state(self, name: str, state: OperatingState | str) -> OperatingState:
        """Set the operating state and return the previous one."""
        try:
            operating_state = OperatingState.parse(state)
        except ValueError as e:
            raise EdgeError(ErrorKind.CONTRACT_INVALID, f"invalid operating state {state!r}", e) from e
        with self._lock:
            device = self._devices.get(name)
            if device is None:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {name} does not exist in cache")
            previous = device.operating_state
            device.operating_state = operating_state
            return previous

    def set_last_connected_by_name(self, name: str) -> int:
        """Stamp the device as just contacted; timestamps never go backwards."""
        with self._lock:
            if name not in self._devices:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"device {name} does not exist in cache")
            stamp = max(now_ns(), self._last_connected.get(name, 0))
            self._last_connected[name] = stamp
            if self._metrics is not None:
                self._metrics.set_gauge(last_connected_gauge_name(name), stamp)
            return stamp

    def last_connected(self, name: str) -> int:
        with self._lock:
            return self._last_connected.get(name, 0)
