"""System event envelope broadcast by metadata on entity changes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from devicecore.utils.helpers import now_ns


class SystemEventType(StrEnum):
    DEVICE = "device"
    DEVICE_PROFILE = "deviceprofile"
    PROVISION_WATCHER = "provisionwatcher"
    DEVICE_SERVICE = "deviceservice"


class SystemEventAction(StrEnum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class SystemEvent:
    """Metadata change notification."""

    type: str
    action: str
    owner: str
    details: Any = None
    source: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ns)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SystemEvent":
        if not isinstance(data, dict):
            raise ValueError("system event must be an object")
        event_type = str(data.get("type") or "").strip().lower()
        action = str(data.get("action") or "").strip().lower()
        if not event_type or not action:
            raise ValueError("system event requires type and action")
        return cls(
            type=event_type,
            action=action,
            owner=str(data.get("owner") or "").strip(),
            details=data.get("details"),
            source=str(data.get("source") or ""),
            tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
            timestamp=int(data.get("timestamp") or 0),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SystemEvent":
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        return cls.from_dict(json.loads(text))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "action": self.action,
            "source": self.source,
            "owner": self.owner,
            "tags": dict(self.tags),
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def details_dict(self) -> dict[str, Any]:
        if not isinstance(self.details, dict):
            raise ValueError(f"system event {self.type}/{self.action} has no object details")
        return self.details
