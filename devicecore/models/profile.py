"""Device profile entities: resources, commands and resource operations."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from devicecore.values.types import ValueType


class ReadWrite(StrEnum):
    R = "R"
    W = "W"
    RW = "RW"

    @classmethod
    def parse(cls, value: Any) -> "ReadWrite":
        text = str(value or "RW").strip().upper()
        if text == "WR":
            return cls.RW
        return cls(text)

    @property
    def readable(self) -> bool:
        return self in (ReadWrite.R, ReadWrite.RW)

    @property
    def writable(self) -> bool:
        return self in (ReadWrite.W, ReadWrite.RW)


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _optional_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def _integer(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, str):
        return int(value.strip(), 0)
    return int(value)


@dataclass(slots=True)
class ResourceProperties:
    """Value type, direction and transformation parameters of a DeviceResource."""

    value_type: ValueType
    read_write: ReadWrite = ReadWrite.RW
    units: str = ""
    minimum: float | None = None
    maximum: float | None = None
    default_value: str = ""
    mask: int = 0
    shift: int = 0
    scale: float = 0.0
    offset: float = 0.0
    base: float = 0.0
    assertion: str = ""
    media_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceProperties":
        return cls(
            value_type=ValueType.parse(data.get("valueType") or ""),
            read_write=ReadWrite.parse(data.get("readWrite")),
            units=str(data.get("units") or ""),
            minimum=_optional_number(data.get("minimum")),
            maximum=_optional_number(data.get("maximum")),
            default_value=str(data.get("defaultValue") if data.get("defaultValue") is not None else ""),
            mask=_integer(data.get("mask")),
            shift=_integer(data.get("shift")),
            scale=_number(data.get("scale")),
            offset=_number(data.get("offset")),
            base=_number(data.get("base")),
            assertion=str(data.get("assertion") or ""),
            media_type=str(data.get("mediaType") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "valueType": str(self.value_type),
            "readWrite": str(self.read_write),
            "units": self.units,
            "defaultValue": self.default_value,
            "mask": self.mask,
            "shift": self.shift,
            "scale": self.scale,
            "offset": self.offset,
            "base": self.base,
            "assertion": self.assertion,
            "mediaType": self.media_type,
        }
        if self.minimum is not None:
            data["minimum"] = self.minimum
        if self.maximum is not None:
            data["maximum"] = self.maximum
        return data


@dataclass(slots=True)
class DeviceResource:
    """An individually addressable data point on a device."""

    name: str
    properties: ResourceProperties
    attributes: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    is_hidden: bool = False
    tags: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceResource":
        return cls(
            name=str(data.get("name") or "").strip(),
            properties=ResourceProperties.from_dict(dict(data.get("properties") or {})),
            attributes=dict(data.get("attributes") or {}),
            description=str(data.get("description") or ""),
            is_hidden=bool(data.get("isHidden", False)),
            tags=dict(data.get("tags") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "isHidden": self.is_hidden,
            "properties": self.properties.to_dict(),
            "attributes": copy.deepcopy(self.attributes),
            "tags": copy.deepcopy(self.tags),
        }


@dataclass(slots=True)
class ResourceOperation:
    """One element of a DeviceCommand."""

    device_resource: str
    default_value: str = ""
    mappings: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceOperation":
        return cls(
            device_resource=str(data.get("deviceResource") or data.get("object") or "").strip(),
            default_value=str(data.get("defaultValue") if data.get("defaultValue") is not None else ""),
            mappings={str(k): str(v) for k, v in (data.get("mappings") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceResource": self.device_resource,
            "defaultValue": self.default_value,
            "mappings": dict(self.mappings),
        }


@dataclass(slots=True)
class DeviceCommand:
    """A named composite read or write over several DeviceResources."""

    name: str
    read_write: ReadWrite = ReadWrite.RW
    resource_operations: list[ResourceOperation] = field(default_factory=list)
    is_hidden: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceCommand":
        return cls(
            name=str(data.get("name") or "").strip(),
            read_write=ReadWrite.parse(data.get("readWrite")),
            resource_operations=[
                ResourceOperation.from_dict(ro)
                for ro in data.get("resourceOperations") or []
                if isinstance(ro, dict)
            ],
            is_hidden=bool(data.get("isHidden", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "readWrite": str(self.read_write),
            "isHidden": self.is_hidden,
            "resourceOperations": [ro.to_dict() for ro in self.resource_operations],
        }


@dataclass(slots=True)
class DeviceProfile:
    """Template describing the resources and commands of a device model."""

    name: str
    device_resources: list[DeviceResource] = field(default_factory=list)
    device_commands: list[DeviceCommand] = field(default_factory=list)
    manufacturer: str = ""
    model: str = ""
    labels: list[str] = field(default_factory=list)
    description: str = ""
    id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceProfile":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("profile name is required")
        return cls(
            name=name,
            device_resources=[
                DeviceResource.from_dict(dr) for dr in data.get("deviceResources") or [] if isinstance(dr, dict)
            ],
            device_commands=[
                DeviceCommand.from_dict(dc) for dc in data.get("deviceCommands") or [] if isinstance(dc, dict)
            ],
            manufacturer=str(data.get("manufacturer") or ""),
            model=str(data.get("model") or ""),
            labels=[str(x) for x in data.get("labels") or []],
            description=str(data.get("description") or ""),
            id=str(data.get("id") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "labels": list(self.labels),
            "description": self.description,
            "deviceResources": [dr.to_dict() for dr in self.device_resources],
            "deviceCommands": [dc.to_dict() for dc in self.device_commands],
        }
        if self.id:
            data["id"] = self.id
        return data
