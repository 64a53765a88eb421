"""Utility helpers for devicecore."""

from devicecore.utils.helpers import now_ms, now_ns, parse_duration

__all__ = ["now_ms", "now_ns", "parse_duration"]
