"""Value-type tags and their numeric ranges."""

from __future__ import annotations

from enum import StrEnum


class ValueType(StrEnum):
    """Value types a DeviceResource may declare."""

    BOOL = "Bool"
    STRING = "String"
    UINT8 = "Uint8"
    UINT16 = "Uint16"
    UINT32 = "Uint32"
    UINT64 = "Uint64"
    INT8 = "Int8"
    INT16 = "Int16"
    INT32 = "Int32"
    INT64 = "Int64"
    FLOAT32 = "Float32"
    FLOAT64 = "Float64"
    BINARY = "Binary"
    OBJECT = "Object"
    BOOL_ARRAY = "BoolArray"
    STRING_ARRAY = "StringArray"
    UINT8_ARRAY = "Uint8Array"
    UINT16_ARRAY = "Uint16Array"
    UINT32_ARRAY = "Uint32Array"
    UINT64_ARRAY = "Uint64Array"
    INT8_ARRAY = "Int8Array"
    INT16_ARRAY = "Int16Array"
    INT32_ARRAY = "Int32Array"
    INT64_ARRAY = "Int64Array"
    FLOAT32_ARRAY = "Float32Array"
    FLOAT64_ARRAY = "Float64Array"
    OBJECT_ARRAY = "ObjectArray"

    @classmethod
    def parse(cls, value: str) -> "ValueType":
        """Case-insensitive lookup (``"float32"`` -> ``FLOAT32``)."""
        text = str(value or "").strip().lower()
        for item in cls:
            if item.value.lower() == text:
                return item
        raise ValueError(f"unknown value type {value!r}")


INTEGER_RANGES: dict[ValueType, tuple[int, int]] = {
    ValueType.UINT8: (0, 2**8 - 1),
    ValueType.UINT16: (0, 2**16 - 1),
    ValueType.UINT32: (0, 2**32 - 1),
    ValueType.UINT64: (0, 2**64 - 1),
    ValueType.INT8: (-(2**7), 2**7 - 1),
    ValueType.INT16: (-(2**15), 2**15 - 1),
    ValueType.INT32: (-(2**31), 2**31 - 1),
    ValueType.INT64: (-(2**63), 2**63 - 1),
}

FLOAT_TYPES = frozenset({ValueType.FLOAT32, ValueType.FLOAT64})

_ARRAY_ELEMENT: dict[ValueType, ValueType] = {
    ValueType.BOOL_ARRAY: ValueType.BOOL,
    ValueType.STRING_ARRAY: ValueType.STRING,
    ValueType.UINT8_ARRAY: ValueType.UINT8,
    ValueType.UINT16_ARRAY: ValueType.UINT16,
    ValueType.UINT32_ARRAY: ValueType.UINT32,
    ValueType.UINT64_ARRAY: ValueType.UINT64,
    ValueType.INT8_ARRAY: ValueType.INT8,
    ValueType.INT16_ARRAY: ValueType.INT16,
    ValueType.INT32_ARRAY: ValueType.INT32,
    ValueType.INT64_ARRAY: ValueType.INT64,
    ValueType.FLOAT32_ARRAY: ValueType.FLOAT32,
    ValueType.FLOAT64_ARRAY: ValueType.FLOAT64,
    ValueType.OBJECT_ARRAY: ValueType.OBJECT,
}


def is_array(value_type: ValueType) -> bool:
    return value_type in _ARRAY_ELEMENT


def element_type(value_type: ValueType) -> ValueType:
    """Element type of an array type; scalar types map to themselves."""
    return _ARRAY_ELEMENT.get(value_type, value_type)


def is_integer(value_type: ValueType) -> bool:
    return value_type in INTEGER_RANGES


def is_float(value_type: ValueType) -> bool:
    return value_type in FLOAT_TYPES


def is_numeric(value_type: ValueType) -> bool:
    """True for scalar integer and float types."""
    return is_integer(value_type) or is_float(value_type)


def is_numeric_array(value_type: ValueType) -> bool:
    return is_array(value_type) and is_numeric(element_type(value_type))
