"""Topic builders and MQTT-style wildcard matching."""

from __future__ import annotations

from urllib.parse import unquote

_ESCAPES = {"/": "%2F", "#": "%23", "+": "%2B"}


def escape_name(name: str) -> str:
    """Escape characters that would change a topic's level structure."""
    out = name.replace("%", "%25")
    for char, code in _ESCAPES.items():
        out = out.replace(char, code)
    return out


def unescape_name(name: str) -> str:
    return unquote(name)


def _join(prefix: str, *parts: str) -> str:
    base = prefix.strip("/")
    return "/".join([base, *parts]) if base else "/".join(parts)


def event_topic(prefix: str, profile_name: str, device_name: str, source_name: str) -> str:
    return _join(
        prefix,
        "events",
        "device",
        escape_name(profile_name),
        escape_name(device_name),
        escape_name(source_name),
    )


def response_topic(prefix: str, instance: str, request_id: str) -> str:
    return _join(prefix, "response", escape_name(instance), escape_name(request_id))


def command_request_subscription(prefix: str, instance: str) -> str:
    return _join(prefix, "commandrequest", escape_name(instance), "#")


def validate_device_topic(prefix: str, instance: str) -> str:
    return _join(prefix, "validate", "device", escape_name(instance))


def system_event_subscriptions(
    prefix: str,
    instance: str,
    base_service: str,
    metadata_service: str,
) -> list[str]:
    """
    Patterns the reconciler listens on.

    Device, profile and service events are addressed to the instance.
    Provision watchers belong to the base service. Profile deletes are
    broadcast by metadata under its own name.
    """
    patterns = [_join(prefix, "system-events", "+", "+", escape_name(instance), "#")]
    # A pattern on the instance name already covers these owners.
    if base_service and base_service != instance:
        patterns.append(_join(prefix, "system-events", "provisionwatcher", "+", escape_name(base_service), "#"))
    if metadata_service and metadata_service != instance:
        patterns.append(_join(prefix, "system-events", "deviceprofile", "delete", escape_name(metadata_service), "#"))
    return patterns


def topic_matches(pattern: str, topic: str) -> bool:
    pattern_parts = pattern.split("/")
    topic_parts = topic.split("/")

    for i, token in enumerate(pattern_parts):
        if token == "#":
            return i == len(pattern_parts) - 1
        if i >= len(topic_parts):
            return False
        if token == "+":
            continue
        if token != topic_parts[i]:
            return False
    return len(topic_parts) == len(pattern_parts)


def topic_tail(pattern: str, topic: str) -> list[str]:
    """Unescaped topic levels matched by the trailing ``#`` of ``pattern``."""
    head = pattern.split("/")
    if head and head[-1] == "#":
        head = head[:-1]
    return [unescape_name(part) for part in topic.split("/")[len(head):]]
