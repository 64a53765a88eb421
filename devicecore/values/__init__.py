"""Typed values and the string/binary codec used on every command path."""

from devicecore.values.command_value import CommandValue, format_float, to_float32, value_to_string
from devicecore.values.types import ValueType, element_type, is_array, is_float, is_integer, is_numeric

__all__ = [
    "CommandValue",
    "ValueType",
    "element_type",
    "format_float",
    "is_array",
    "is_float",
    "is_integer",
    "is_numeric",
    "to_float32",
    "value_to_string",
]
