"""Events, readings and driver request records."""

from __future__ import annotations

import base64
import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from devicecore.utils.helpers import now_ns
from devicecore.values.types import ValueType


@dataclass(slots=True)
class Reading:
    """A single resource value inside an Event."""

    resource_name: str
    value_type: ValueType
    value: str = ""
    binary_value: bytes = b""
    media_type: str = ""
    units: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    device_name: str = ""
    profile_name: str = ""
    origin: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_binary(self) -> bool:
        return self.value_type == ValueType.BINARY

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "origin": self.origin,
            "deviceName": self.device_name,
            "profileName": self.profile_name,
            "resourceName": self.resource_name,
            "valueType": str(self.value_type),
        }
        if self.is_binary:
            data["binaryValue"] = base64.b64encode(self.binary_value).decode("ascii")
            data["mediaType"] = self.media_type
        else:
            data["value"] = self.value
        if self.units:
            data["units"] = self.units
        if self.tags:
            data["tags"] = dict(self.tags)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reading":
        raw_binary = data.get("binaryValue")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            origin=int(data.get("origin") or 0),
            device_name=str(data.get("deviceName") or ""),
            profile_name=str(data.get("profileName") or ""),
            resource_name=str(data.get("resourceName") or ""),
            value_type=ValueType.parse(data.get("valueType") or "String"),
            value=str(data.get("value") or ""),
            binary_value=base64.b64decode(raw_binary) if raw_binary else b"",
            media_type=str(data.get("mediaType") or ""),
            units=str(data.get("units") or ""),
            tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
        )


@dataclass(slots=True)
class Event:
    """Readings produced by one command or AutoEvent execution."""

    device_name: str
    profile_name: str
    source_name: str
    readings: list[Reading] = field(default_factory=list)
    origin: int = field(default_factory=now_ns)
    tags: dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def has_binary_value(self) -> bool:
        return any(r.is_binary for r in self.readings)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "apiVersion": "v3",
            "id": self.id,
            "deviceName": self.device_name,
            "profileName": self.profile_name,
            "sourceName": self.source_name,
            "origin": self.origin,
            "readings": [r.to_dict() for r in self.readings],
        }
        if self.tags:
            data["tags"] = dict(self.tags)
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            device_name=str(data.get("deviceName") or ""),
            profile_name=str(data.get("profileName") or ""),
            source_name=str(data.get("sourceName") or ""),
            origin=int(data.get("origin") or 0),
            readings=[Reading.from_dict(r) for r in data.get("readings") or [] if isinstance(r, dict)],
            tags={str(k): str(v) for k, v in (data.get("tags") or {}).items()},
        )


@dataclass(slots=True)
class CommandRequest:
    """One resource read or write handed to the driver."""

    resource_name: str
    attributes: dict[str, Any]
    type: ValueType


@dataclass(slots=True)
class AsyncValues:
    """Values pushed by the driver outside of any command request."""

    device_name: str
    source_name: str
    command_values: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class ProfileScanRequest:
    """Request for the driver to derive a profile from a live device."""

    device_name: str
    profile_name: str = ""
    options: Any = None
    protocols: dict[str, dict[str, Any]] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfileScanRequest":
        return cls(
            device_name=str(data.get("deviceName") or "").strip(),
            profile_name=str(data.get("profileName") or "").strip(),
            options=data.get("options"),
            request_id=str(data.get("requestId") or uuid.uuid4()),
        )
