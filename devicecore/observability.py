"""Runtime observability helpers for the device service."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from devicecore.utils.helpers import now_ms


@dataclass(slots=True)
class ServiceMetrics:
    """In-memory counters and gauges for device-service observability."""

    started_at_ms: int = field(default_factory=now_ms)
    commands_total: int = 0
    command_failures_total: int = 0
    events_published_total: int = 0
    events_dropped_total: int = 0
    system_events_applied_total: int = 0
    system_events_failed_total: int = 0
    commands_by_method: Counter[str] = field(default_factory=Counter)
    gauges: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_command(self, method: str, *, success: bool) -> None:
        with self._lock:
            self.commands_total += 1
            self.commands_by_method[str(method)] += 1
            if not success:
                self.command_failures_total += 1

    def record_event_published(self) -> None:
        with self._lock:
            self.events_published_total += 1

    def record_event_dropped(self) -> None:
        with self._lock:
            self.events_dropped_total += 1

    def record_system_event(self, *, success: bool) -> None:
        with self._lock:
            if success:
                self.system_events_applied_total += 1
            else:
                self.system_events_failed_total += 1

    def register_gauge(self, name: str, value: int = 0) -> None:
        with self._lock:
            self.gauges.setdefault(name, int(value))

    def unregister_gauge(self, name: str) -> None:
        with self._lock:
            self.gauges.pop(name, None)

    def set_gauge(self, name: str, value: int) -> None:
        with self._lock:
            if name in self.gauges:
                self.gauges[name] = int(value)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "started_at_ms": self.started_at_ms,
                "commands_total": self.commands_total,
                "command_failures_total": self.command_failures_total,
                "commands_by_method": dict(self.commands_by_method),
                "events_published_total": self.events_published_total,
                "events_dropped_total": self.events_dropped_total,
                "system_events_applied_total": self.system_events_applied_total,
                "system_events_failed_total": self.system_events_failed_total,
                "gauges": dict(self.gauges),
            }


def last_connected_gauge_name(device_name: str) -> str:
    return f"LastConnected-{device_name}"
