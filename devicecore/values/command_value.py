"""Typed value exchanged between the runtime and protocol drivers."""

from __future__ import annotations

import base64
import json
import math
import struct
from dataclasses import dataclass, field
from typing import Any

from devicecore.errors import EdgeError, ErrorKind
from devicecore.utils.helpers import now_ns
from devicecore.values.types import (
    INTEGER_RANGES,
    ValueType,
    element_type,
    is_array,
    is_float,
    is_integer,
)


def to_float32(value: float) -> float:
    """Round a Python float to float32 precision (OverflowError when out of range)."""
    return struct.unpack(">f", struct.pack(">f", float(value)))[0]


def format_float(value: float, value_type: ValueType) -> str:
    """Shortest decimal text that round-trips at the width of ``value_type``."""
    number = float(value)
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "+Inf" if number > 0 else "-Inf"
    if value_type != ValueType.FLOAT32:
        return repr(number)
    target = to_float32(number)
    for precision in range(1, 10):
        text = f"{target:.{precision}g}"
        try:
            rounded = to_float32(float(text))
        except OverflowError:
            # Rounded up past the float32 maximum.
            continue
        if rounded == target:
            return repr(float(text))
    return repr(target)


def _check_scalar(value_type: ValueType, value: Any) -> Any:
    if value_type == ValueType.BOOL:
        if not isinstance(value, bool):
            raise TypeError("expected bool")
        return value
    if value_type == ValueType.STRING:
        if not isinstance(value, str):
            raise TypeError("expected str")
        return value
    if is_integer(value_type):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("expected int")
        low, high = INTEGER_RANGES[value_type]
        if not low <= value <= high:
            raise ValueError(f"{value} out of range for {value_type}")
        return value
    if is_float(value_type):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError("expected float")
        if value_type == ValueType.FLOAT32:
            return to_float32(float(value))
        return float(value)
    if value_type == ValueType.BINARY:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("expected bytes")
        return bytes(value)
    return value


@dataclass(slots=True)
class CommandValue:
    """One typed value for a DeviceResource, as produced or consumed by a driver."""

    resource_name: str
    value_type: ValueType
    value: Any
    tags: dict[str, str] = field(default_factory=dict)
    origin: int = 0
    media_type: str = ""

    @classmethod
    def new(
        cls,
        resource_name: str,
        value_type: ValueType | str,
        value: Any,
        *,
        origin: int = 0,
        media_type: str = "",
    ) -> "CommandValue":
        """Build a CommandValue after checking ``value`` against ``value_type``."""
        vt = ValueType.parse(value_type) if not isinstance(value_type, ValueType) else value_type
        try:
            if is_array(vt):
                if not isinstance(value, (list, tuple)):
                    raise TypeError("expected list")
                checked: Any = [_check_scalar(element_type(vt), item) for item in value]
            else:
                checked = _check_scalar(vt, value)
        except (TypeError, ValueError, OverflowError) as e:
            raise EdgeError(
                ErrorKind.CONTRACT_INVALID,
                f"value {value!r} is not valid for {resource_name} of type {vt}",
                e,
            ) from e
        return cls(
            resource_name=resource_name,
            value_type=vt,
            value=checked,
            origin=origin or now_ns(),
            media_type=media_type,
        )

    def value_to_string(self) -> str:
        """Render the value the way it is carried in a Reading."""
        return value_to_string(self.value_type, self.value)

    def binary_value(self) -> bytes:
        if self.value_type != ValueType.BINARY:
            raise EdgeError(ErrorKind.CONTRACT_INVALID, f"{self.resource_name} is not Binary")
        return bytes(self.value)


def _scalar_to_string(value_type: ValueType, value: Any) -> str:
    if value_type == ValueType.BOOL:
        return "true" if value else "false"
    if value_type == ValueType.STRING:
        return str(value)
    if is_integer(value_type):
        return str(int(value))
    if is_float(value_type):
        return format_float(value, value_type)
    if value_type == ValueType.BINARY:
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def value_to_string(value_type: ValueType, value: Any) -> str:
    if not is_array(value_type):
        return _scalar_to_string(value_type, value)
    item_type = element_type(value_type)
    if item_type in {ValueType.STRING, ValueType.OBJECT}:
        return json.dumps(list(value), separators=(",", ":"), ensure_ascii=False)
    return "[" + ", ".join(_scalar_to_string(item_type, item) for item in value) + "]"
