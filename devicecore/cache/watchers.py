"""Thread-safe mirror of provision watchers."""

from __future__ import annotations

import copy
import threading

from devicecore.cache.devices import parse_admin_state
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import AdminState
from devicecore.models.watcher import ProvisionWatcher


class ProvisionWatcherCache:
    """Watcher registry keyed by name. Lookups return deep copies."""

    def __init__(self, watchers: list[ProvisionWatcher] | None = None) -> None:
        self._lock = threading.RLock()
        self._watchers: dict[str, ProvisionWatcher] = {}
        for watcher in watchers or []:
            self.add(watcher)

    def for_name(self, name: str) -> ProvisionWatcher | None:
        with self._lock:
            watcher = self._watchers.get(name)
            return copy.deepcopy(watcher) if watcher else None

    def all(self) -> list[ProvisionWatcher]:
        with self._lock:
            return [copy.deepcopy(w) for w in self._watchers.values()]

    def add(self, watcher: ProvisionWatcher) -> None:
        with self._lock:
            if watcher.name in self._watchers:
                raise EdgeError(
                    ErrorKind.DUPLICATE_NAME,
                    f"provision watcher {watcher.name} already exists in cache",
                )
            self._watchers[watcher.name] = copy.deepcopy(watcher)

    def update(self, watcher: ProvisionWatcher) -> None:
        with self._lock:
            if watcher.name not in self._watchers:
                raise EdgeError(
                    ErrorKind.ENTITY_DOES_NOT_EXIST,
                    f"provision watcher {watcher.name} does not exist in cache",
                )
            self._watchers[watcher.name] = copy.deepcopy(watcher)

    def remove_by_name(self, name: str) -> None:
        with self._lock:
            if name not in self._watchers:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"provision watcher {name} does not exist in cache")
            del self._watchers[name]

    def update_admin_state(self, name: str, state: AdminState | str) -> None:
        admin_state = parse_admin_state(state)
        with self._lock:
            watcher = self._watchers.get(name)
            if watcher is None:
                raise EdgeError(ErrorKind.ENTITY_DOES_NOT_EXIST, f"provision watcher {name} does not exist in cache")
            watcher.admin_state = admin_state
