"""Per-resource numeric transforms, assertion checks and value mappings."""

from __future__ import annotations

import math
from typing import Any

from loguru import logger

from devicecore.errors import EdgeError, ErrorKind
from devicecore.models.profile import ResourceProperties
from devicecore.values.command_value import CommandValue, to_float32
from devicecore.values.types import INTEGER_RANGES, ValueType, is_float, is_integer

OVERFLOW = "overflow"
NAN = "NaN"
ASSERTION_TAG = "assertion"


class TransformOverflow(ArithmeticError):
    """Transformed value does not fit the destination type."""


class TransformNaN(ArithmeticError):
    """Transformed value is not a number."""


def _fit_integer(number: float | int, value_type: ValueType, *, rounding: bool) -> int:
    if isinstance(number, float):
        if math.isnan(number):
            raise TransformNaN(f"NaN for {value_type}")
        if math.isinf(number):
            raise TransformOverflow(f"infinite value for {value_type}")
        number = round(number) if rounding else int(number)
    low, high = INTEGER_RANGES[value_type]
    if not low <= number <= high:
        raise TransformOverflow(f"{number} out of range for {value_type}")
    return int(number)


def _fit_float(number: float | int, value_type: ValueType) -> float:
    number = float(number)
    if math.isnan(number):
        raise TransformNaN(f"NaN for {value_type}")
    if math.isinf(number):
        raise TransformOverflow(f"infinite value for {value_type}")
    if value_type == ValueType.FLOAT32:
        try:
            return to_float32(number)
        except OverflowError as e:
            raise TransformOverflow(f"{number} out of range for {value_type}") from e
    return number


def apply_read_transform(value: Any, value_type: ValueType, props: ResourceProperties) -> int | float:
    """
    Apply base, scale, offset, mask and shift to a raw device value.

    Raises:
        TransformOverflow: result does not fit ``value_type``.
        TransformNaN: result is NaN.
    """
    number: int | float = value
    try:
        if props.base:
            number = math.pow(props.base, number)
        if props.scale:
            number = number * props.scale
        if props.offset:
            number = number + props.offset
    except OverflowError as e:
        raise TransformOverflow(str(e)) from e

    if is_integer(value_type):
        result = _fit_integer(number, value_type, rounding=False)
        if props.mask:
            result &= props.mask
        if props.shift > 0:
            result <<= props.shift
        elif props.shift < 0:
            result >>= -props.shift
        return _fit_integer(result, value_type, rounding=False)
    return _fit_float(number, value_type)


def transform_read_value(cv: CommandValue, props: ResourceProperties) -> CommandValue:
    """Transformed copy of ``cv``; overflow and NaN become String readings."""
    if not (props.base or props.scale or props.offset or props.mask or props.shift):
        return cv
    try:
        result = apply_read_transform(cv.value, cv.value_type, props)
    except TransformOverflow as e:
        logger.warning(f"transform overflow for {cv.resource_name}: {e}")
        return _replace_with_string(cv, OVERFLOW)
    except TransformNaN as e:
        logger.warning(f"transform NaN for {cv.resource_name}: {e}")
        return _replace_with_string(cv, NAN)
    return CommandValue(
        resource_name=cv.resource_name,
        value_type=cv.value_type,
        value=result,
        tags=dict(cv.tags),
        origin=cv.origin,
        media_type=cv.media_type,
    )


def _replace_with_string(cv: CommandValue, text: str) -> CommandValue:
    return CommandValue(
        resource_name=cv.resource_name,
        value_type=ValueType.STRING,
        value=text,
        tags=dict(cv.tags),
        origin=cv.origin,
    )


def check_assertion(cv: CommandValue, assertion: str) -> bool:
    """Tag ``cv`` when its string form differs from ``assertion``. Returns True when it holds."""
    if not assertion:
        return True
    actual = cv.value_to_string()
    if actual == assertion:
        return True
    cv.tags[ASSERTION_TAG] = "failed"
    logger.warning(
        f"Assertion failed for device resource: {cv.resource_name}, with value: {actual}, expected: {assertion}"
    )
    return False


def map_value(cv: CommandValue, mappings: dict[str, str]) -> CommandValue:
    """Replace the value with its mapped string when the mapping table has it."""
    key = cv.value_to_string()
    mapped = mappings.get(key)
    if mapped is None:
        logger.debug(f"no mapping for value {key} of {cv.resource_name}")
        return cv
    return CommandValue(
        resource_name=cv.resource_name,
        value_type=ValueType.STRING,
        value=mapped,
        tags=dict(cv.tags),
        origin=cv.origin,
    )


def reverse_map(value: Any, mappings: dict[str, str]) -> Any:
    """
    Translate a written value through a mapping table.

    A value equal to a mapping value is replaced by its key. Otherwise a value
    equal to a mapping key is replaced by that key's value.
    """
    if not mappings or not isinstance(value, (str, int, float, bool)):
        return value
    text = str(value).lower() if isinstance(value, bool) else str(value)
    for key, mapped in mappings.items():
        if mapped == text:
            return key
    if text in mappings:
        return mappings[text]
    return value


def validate_write_range(cv: CommandValue, props: ResourceProperties) -> None:
    """Reject numeric writes outside the resource's minimum/maximum."""
    if not (is_integer(cv.value_type) or is_float(cv.value_type)):
        return
    number = cv.value
    if props.minimum is not None and number < props.minimum:
        raise EdgeError(
            ErrorKind.CONTRACT_INVALID,
            f"{cv.resource_name} value {number} is below the minimum {props.minimum}",
        )
    if props.maximum is not None and number > props.maximum:
        raise EdgeError(
            ErrorKind.CONTRACT_INVALID,
            f"{cv.resource_name} value {number} is above the maximum {props.maximum}",
        )


def transform_write_value(cv: CommandValue, props: ResourceProperties) -> CommandValue:
    """
    Invert the read transform before a value is handed to the driver.

    Raises:
        EdgeError: ContractInvalid when the result does not fit the destination type.
    """
    if not (is_integer(cv.value_type) or is_float(cv.value_type)):
        return cv
    if not (props.base or props.scale or props.offset or props.mask or props.shift):
        return cv
    number: int | float = cv.value
    try:
        if is_integer(cv.value_type):
            if props.shift > 0:
                number = int(number) >> props.shift
            elif props.shift < 0:
                number = int(number) << -props.shift
            if props.mask:
                number = int(number) & props.mask
        if props.offset:
            number = number - props.offset
        if props.scale:
            number = number / props.scale
        if props.base:
            number = math.log(number, props.base)
        if is_integer(cv.value_type):
            result: int | float = _fit_integer(number, cv.value_type, rounding=True)
        else:
            result = _fit_float(number, cv.value_type)
    except (TransformOverflow, TransformNaN, ValueError, ZeroDivisionError, OverflowError) as e:
        raise EdgeError(
            ErrorKind.CONTRACT_INVALID,
            f"{OVERFLOW}: cannot write {cv.value} to {cv.resource_name} as {cv.value_type}",
            e,
        ) from e
    return CommandValue(
        resource_name=cv.resource_name,
        value_type=cv.value_type,
        value=result,
        tags=dict(cv.tags),
        origin=cv.origin,
        media_type=cv.media_type,
    )
