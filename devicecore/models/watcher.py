"""Provision watchers: allow/deny rules that auto-create discovered devices."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from devicecore.models.device import AdminState, AutoEvent


@dataclass(slots=True)
class DiscoveredDeviceTemplate:
    """Template applied to a Device created from a matching discovery."""

    profile_name: str = ""
    admin_state: AdminState = AdminState.UNLOCKED
    auto_events: list[AutoEvent] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscoveredDeviceTemplate":
        return cls(
            profile_name=str(data.get("profileName") or "").strip(),
            admin_state=AdminState.parse(data.get("adminState") or AdminState.UNLOCKED),
            auto_events=[AutoEvent.from_dict(x) for x in data.get("autoEvents") or [] if isinstance(x, dict)],
            properties=dict(data.get("properties") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "profileName": self.profile_name,
            "adminState": str(self.admin_state),
            "autoEvents": [ae.to_dict() for ae in self.auto_events],
            "properties": copy.deepcopy(self.properties),
        }


@dataclass(slots=True)
class ProvisionWatcher:
    """Identifier regexes (allow) and literal blocklists (deny) for discovery."""

    name: str
    service_name: str = ""
    admin_state: AdminState = AdminState.UNLOCKED
    identifiers: dict[str, str] = field(default_factory=dict)
    blocking_identifiers: dict[str, list[str]] = field(default_factory=dict)
    discovered_device: DiscoveredDeviceTemplate = field(default_factory=DiscoveredDeviceTemplate)
    labels: list[str] = field(default_factory=list)
    id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProvisionWatcher":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("provision watcher name is required")
        template = data.get("discoveredDevice")
        if not isinstance(template, dict):
            # Flat layout used by older seed files.
            template = {
                "profileName": data.get("profileName"),
                "adminState": data.get("adminState"),
                "autoEvents": data.get("autoEvents"),
            }
        return cls(
            name=name,
            service_name=str(data.get("serviceName") or "").strip(),
            admin_state=AdminState.parse(data.get("adminState") or AdminState.UNLOCKED),
            identifiers={str(k): str(v) for k, v in (data.get("identifiers") or {}).items()},
            blocking_identifiers={
                str(k): [str(x) for x in (v if isinstance(v, list) else [v])]
                for k, v in (data.get("blockingIdentifiers") or {}).items()
            },
            discovered_device=DiscoveredDeviceTemplate.from_dict(template),
            labels=[str(x) for x in data.get("labels") or []],
            id=str(data.get("id") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "serviceName": self.service_name,
            "adminState": str(self.admin_state),
            "identifiers": dict(self.identifiers),
            "blockingIdentifiers": {k: list(v) for k, v in self.blocking_identifiers.items()},
            "discoveredDevice": self.discovered_device.to_dict(),
            "labels": list(self.labels),
        }
        if self.id:
            data["id"] = self.id
        return data
