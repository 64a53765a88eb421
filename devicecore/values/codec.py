"""Coercion of raw request values into typed CommandValues, and of values into Events."""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
import struct
from typing import Any

from loguru import logger

from devicecore import transformer
from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.device import Device
from devicecore.models.event import Event, Reading
from devicecore.models.profile import DeviceProfile, DeviceResource, ResourceOperation
from devicecore.utils.helpers import now_ns
from devicecore.values.command_value import CommandValue, to_float32
from devicecore.values.types import (
    INTEGER_RANGES,
    ValueType,
    element_type,
    is_array,
    is_float,
    is_integer,
    is_numeric,
)

_SIGNED_INT = re.compile(r"^[+-]?\d+$")
_UNSIGNED_INT = re.compile(r"^\+?\d+$")
_INF_LITERAL = re.compile(r"^[+-]?inf(inity)?$", re.IGNORECASE)
_TRUE_LITERALS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_LITERALS = {"0", "f", "F", "FALSE", "false", "False"}


def _invalid(text: Any, value_type: ValueType, cause: BaseException | None = None) -> EdgeError:
    return EdgeError(ErrorKind.CONTRACT_INVALID, f"failed to parse {text!r} as {value_type}", cause)


def parse_bool(text: str) -> bool:
    if text in _TRUE_LITERALS:
        return True
    if text in _FALSE_LITERALS:
        return False
    raise _invalid(text, ValueType.BOOL)


def parse_int(text: str, value_type: ValueType) -> int:
    low, high = INTEGER_RANGES[value_type]
    pattern = _UNSIGNED_INT if low == 0 else _SIGNED_INT
    stripped = text.strip()
    if not pattern.match(stripped):
        raise _invalid(text, value_type)
    number = int(stripped)
    if not low <= number <= high:
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"{text} is out of range for {value_type}")
    return number


def parse_float(text: str, value_type: ValueType) -> float:
    """
    Parse a float from decimal text, falling back to base64 big-endian bytes.

    Decimal values outside the range of ``value_type`` are a ServerError. The
    binary form must carry exactly 4 (Float32) or 8 (Float64) bytes and must
    not decode to NaN.
    """
    stripped = text.strip()
    try:
        number = float(stripped)
    except ValueError:
        number = None
    if number is not None:
        if math.isinf(number) and not _INF_LITERAL.match(stripped):
            raise EdgeError(ErrorKind.SERVER_ERROR, f"{text} is out of range for {value_type}")
        if value_type == ValueType.FLOAT32 and math.isfinite(number):
            try:
                number = to_float32(number)
            except OverflowError as e:
                raise EdgeError(ErrorKind.SERVER_ERROR, f"{text} is out of range for {value_type}", e) from e
        return number

    try:
        raw = base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError) as e:
        raise _invalid(text, value_type, e) from e
    size, fmt = (4, ">f") if value_type == ValueType.FLOAT32 else (8, ">d")
    if len(raw) != size:
        raise EdgeError(
            ErrorKind.CONTRACT_INVALID,
            f"binary {value_type} needs {size} bytes, got {len(raw)}",
        )
    number = struct.unpack(fmt, raw)[0]
    if math.isnan(number):
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"binary value {text!r} decodes to NaN")
    return number


def _parse_scalar(text: str, value_type: ValueType) -> Any:
    if value_type == ValueType.STRING:
        return text
    if text == "":
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"empty string is invalid for {value_type}")
    if value_type == ValueType.BOOL:
        return parse_bool(text.strip())
    if is_integer(value_type):
        return parse_int(text, value_type)
    if is_float(value_type):
        return parse_float(text, value_type)
    if value_type == ValueType.BINARY:
        try:
            return base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise _invalid(text, value_type, e) from e
    # Object
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _coerce_item(item: Any, value_type: ValueType) -> Any:
    """Coerce one decoded JSON array element to ``value_type``."""
    if isinstance(item, str):
        return _parse_scalar(item, value_type)
    if value_type == ValueType.OBJECT:
        return item
    if value_type == ValueType.BOOL:
        if isinstance(item, bool):
            return item
        raise _invalid(item, value_type)
    if value_type == ValueType.STRING:
        return _stringify(item)
    if isinstance(item, bool):
        raise _invalid(item, value_type)
    if is_integer(value_type):
        if isinstance(item, float):
            if not item.is_integer():
                raise _invalid(item, value_type)
            item = int(item)
        if not isinstance(item, int):
            raise _invalid(item, value_type)
        return parse_int(str(item), value_type)
    if is_float(value_type) and isinstance(item, (int, float)):
        return parse_float(repr(float(item)), value_type)
    raise _invalid(item, value_type)


def parse_array(text: str, value_type: ValueType) -> list[Any]:
    """Parse a JSON array literal or the bracketed ``[v1, v2, ...]`` form."""
    item_type = element_type(value_type)
    stripped = text.strip()
    if not (stripped.startswith("[") and stripped.endswith("]")):
        raise _invalid(text, value_type)
    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, list):
        return [_coerce_item(item, item_type) for item in decoded]
    inner = stripped[1:-1].strip()
    if not inner:
        return []
    items = [part.strip() for part in inner.split(",")]
    if item_type == ValueType.STRING:
        items = [part.strip("\"'") for part in items]
    return [_parse_scalar(part, item_type) for part in items]


def _stringify(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, float):
        return repr(raw)
    if isinstance(raw, (list, dict)):
        return json.dumps(raw, ensure_ascii=False)
    return str(raw)


def create_command_value(resource: DeviceResource, raw: Any) -> CommandValue:
    """Coerce a raw request value into a CommandValue typed by ``resource``."""
    value_type = resource.properties.value_type
    if raw is None:
        raise EdgeError(ErrorKind.CONTRACT_INVALID, f"no value supplied for {resource.name}")
    if value_type == ValueType.OBJECT and not isinstance(raw, str):
        value: Any = raw
    elif value_type == ValueType.BINARY and isinstance(raw, (bytes, bytearray)):
        value = bytes(raw)
    elif is_array(value_type):
        text = _stringify(raw)
        if text == "":
            raise EdgeError(ErrorKind.CONTRACT_INVALID, f"empty string is invalid for {value_type}")
        value = parse_array(text, value_type)
    else:
        value = _parse_scalar(_stringify(raw), value_type)
    return CommandValue(
        resource_name=resource.name,
        value_type=value_type,
        value=value,
        origin=now_ns(),
        media_type=resource.properties.media_type,
    )


def find_resource_operation(
    profile: DeviceProfile,
    source_name: str,
    resource_name: str,
) -> ResourceOperation | None:
    """ResourceOperation for a resource, preferring the command named ``source_name``."""
    for command in profile.device_commands:
        if command.name != source_name:
            continue
        for ro in command.resource_operations:
            if ro.device_resource == resource_name:
                return ro
    for command in profile.device_commands:
        for ro in command.resource_operations:
            if ro.device_resource == resource_name:
                return ro
    return None


def command_values_to_event(
    values: list[CommandValue],
    device: Device,
    profile: DeviceProfile,
    source_name: str,
    *,
    apply_transform: bool,
    data_transform: bool = True,
) -> Event:
    """
    Build an Event from driver results.

    With ``apply_transform`` the read pipeline runs on every value: numeric
    transforms when ``data_transform`` is enabled, then the assertion check,
    then the mapping table of the matching ResourceOperation.
    """
    resources = {dr.name: dr for dr in profile.device_resources}
    origin = now_ns()
    readings: list[Reading] = []
    for cv in values:
        if cv is None:
            continue
        resource = resources.get(cv.resource_name)
        if resource is None:
            raise EdgeError(
                ErrorKind.SERVER_ERROR,
                f"device resource {cv.resource_name} not found in profile {profile.name}",
            )
        current = cv
        if apply_transform:
            if data_transform and is_numeric(current.value_type):
                current = transformer.transform_read_value(current, resource.properties)
            transformer.check_assertion(current, resource.properties.assertion)
            ro = find_resource_operation(profile, source_name, resource.name)
            if ro is not None and ro.mappings:
                current = transformer.map_value(current, ro.mappings)
        readings.append(
            _reading_from_value(current, resource, device, profile, origin=current.origin or origin)
        )
    return Event(
        device_name=device.name,
        profile_name=profile.name,
        source_name=source_name,
        readings=readings,
        origin=origin,
    )


def _reading_from_value(
    cv: CommandValue,
    resource: DeviceResource,
    device: Device,
    profile: DeviceProfile,
    *,
    origin: int,
) -> Reading:
    reading = Reading(
        resource_name=cv.resource_name,
        value_type=cv.value_type,
        units=resource.properties.units,
        tags=dict(cv.tags),
        device_name=device.name,
        profile_name=profile.name,
        origin=origin,
    )
    if cv.value_type == ValueType.BINARY:
        reading.binary_value = cv.binary_value()
        reading.media_type = cv.media_type or resource.properties.media_type
        if not reading.media_type:
            logger.debug(f"binary reading {cv.resource_name} of {device.name} has no media type")
    else:
        reading.value = cv.value_to_string()
    return reading
