"""Device, device-service and auto-event entities mirrored from metadata."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class AdminState(StrEnum):
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"

    @classmethod
    def parse(cls, value: Any) -> "AdminState":
        return cls(str(value or "").strip().upper())


class OperatingState(StrEnum):
    UP = "UP"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "OperatingState":
        text = str(value or "").strip().upper()
        # Pre-v2 metadata used ENABLED/DISABLED.
        aliases = {"ENABLED": "UP", "DISABLED": "DOWN"}
        return cls(aliases.get(text, text))


@dataclass(slots=True)
class AutoEvent:
    """Periodic self-initiated read of a resource or command."""

    source_name: str
    interval: str
    on_change: bool = False
    on_change_threshold: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoEvent":
        return cls(
            source_name=str(data.get("sourceName") or data.get("resource") or "").strip(),
            interval=str(data.get("interval") or data.get("frequency") or "").strip(),
            on_change=bool(data.get("onChange", False)),
            on_change_threshold=float(data.get("onChangeThreshold") or 0.0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceName": self.source_name,
            "interval": self.interval,
            "onChange": self.on_change,
            "onChangeThreshold": self.on_change_threshold,
        }


def _protocols_from(raw: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(name): dict(props) if isinstance(props, dict) else {}
        for name, props in raw.items()
    }


@dataclass(slots=True)
class Device:
    """A physical device addressed through the owning device service."""

    name: str
    profile_name: str = ""
    service_name: str = ""
    admin_state: AdminState = AdminState.UNLOCKED
    operating_state: OperatingState = OperatingState.UP
    protocols: dict[str, dict[str, Any]] = field(default_factory=dict)
    labels: list[str] = field(default_factory=list)
    auto_events: list[AutoEvent] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    id: str = ""
    last_connected: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Device":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("device name is required")
        return cls(
            name=name,
            profile_name=str(data.get("profileName") or "").strip(),
            service_name=str(data.get("serviceName") or "").strip(),
            admin_state=AdminState.parse(data.get("adminState") or AdminState.UNLOCKED),
            operating_state=OperatingState.parse(data.get("operatingState") or OperatingState.UP),
            protocols=_protocols_from(data.get("protocols")),
            labels=[str(x) for x in data.get("labels") or []],
            auto_events=[AutoEvent.from_dict(x) for x in data.get("autoEvents") or [] if isinstance(x, dict)],
            properties=dict(data.get("properties") or {}),
            description=str(data.get("description") or ""),
            id=str(data.get("id") or ""),
            last_connected=int(data.get("lastConnected") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "profileName": self.profile_name,
            "serviceName": self.service_name,
            "adminState": str(self.admin_state),
            "operatingState": str(self.operating_state),
            "protocols": copy.deepcopy(self.protocols),
            "labels": list(self.labels),
            "autoEvents": [ae.to_dict() for ae in self.auto_events],
            "properties": copy.deepcopy(self.properties),
            "description": self.description,
        }
        if self.id:
            data["id"] = self.id
        if self.last_connected:
            data["lastConnected"] = self.last_connected
        return data


@dataclass(slots=True)
class DeviceService:
    """Registration record of this service in metadata."""

    name: str
    admin_state: AdminState = AdminState.UNLOCKED
    labels: list[str] = field(default_factory=list)
    base_address: str = ""
    description: str = ""
    id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceService":
        return cls(
            name=str(data.get("name") or "").strip(),
            admin_state=AdminState.parse(data.get("adminState") or AdminState.UNLOCKED),
            labels=[str(x) for x in data.get("labels") or []],
            base_address=str(data.get("baseAddress") or ""),
            description=str(data.get("description") or ""),
            id=str(data.get("id") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "adminState": str(self.admin_state),
            "labels": list(self.labels),
            "baseAddress": self.base_address,
            "description": self.description,
        }
        if self.id:
            data["id"] = self.id
        return data


@dataclass(slots=True)
class DiscoveredDevice:
    """A device reported by the driver's discovery routine."""

    name: str
    protocols: dict[str, dict[str, Any]] = field(default_factory=dict)
    description: str = ""
    labels: list[str] = field(default_factory=list)
