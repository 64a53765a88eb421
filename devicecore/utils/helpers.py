"""Small helpers shared across the runtime."""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def now_ms() -> int:
    """Current timestamp in milliseconds."""
    return int(time.time() * 1000)


def now_ns() -> int:
    """Current timestamp in nanoseconds."""
    return time.time_ns()


def parse_duration(value: Any) -> float:
    """
    Parse a Go-style duration into seconds.

    Accepts strings such as ``"100ms"``, ``"1m30s"`` or ``"-2h"`` as well as
    bare numbers, which are taken as seconds.

    Raises:
        ValueError: if the value cannot be parsed.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value or "").strip()
    if not text:
        raise ValueError("empty duration")
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    try:
        return sign * float(text)
    except ValueError:
        pass
    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def camel_to_snake(name: str) -> str:
    """Convert PascalCase or camelCase to snake_case (``MaxCmdOps`` -> ``max_cmd_ops``)."""
    text = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", str(name))
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", text)
    return text.replace("-", "_").lower()


def snake_to_camel(name: str) -> str:
    head, *rest = str(name).split("_")
    return head + "".join(word.capitalize() for word in rest)


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Return the devicecore data root (``~/.devicecore``)."""
    return ensure_dir(Path.home() / ".devicecore")
