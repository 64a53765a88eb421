"""Per-device counters of remaining tolerated consecutive failures."""

from __future__ import annotations

import threading


class _Counter:
    __slots__ = ("_lock", "_value")

    def __init__(self, value: int) -> None:
        self._lock = threading.Lock()
        self._value = int(value)

    def get(self) -> int:
        with self._lock:
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = int(value)

    def decrease(self) -> int:
        with self._lock:
            if self._value < 0:
                return -1
            self._value -= 1
            return self._value


class FailureTracker:
    """
    Map of device name to remaining allowed failures.

    ``decrease`` returning 0 means the device just exhausted its budget;
    -1 means the device is unknown (removed) or already past the budget.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, _Counter] = {}

    def set(self, name: str, value: int) -> None:
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                self._counters[name] = _Counter(value)
                return
        counter.set(value)

    def value(self, name: str) -> int:
        with self._lock:
            counter = self._counters.get(name)
        return counter.get() if counter else -1

    def decrease(self, name: str) -> int:
        with self._lock:
            counter = self._counters.get(name)
        if counter is None:
            return -1
        return counter.decrease()

    def remove(self, name: str) -> None:
        with self._lock:
            self._counters.pop(name, None)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._counters)
