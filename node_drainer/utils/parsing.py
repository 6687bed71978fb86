# Standard library imports
import re
from typing import Dict, Iterable, Optional, Tuple

from ..models import CONDITION_TRUE, ConditionSpec

# Seconds per unit, following Go's time.ParseDuration.
DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}

_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """
    Parse a duration string such as ``10m``, ``8m0s`` or ``1h30m`` into seconds.

    Args:
        value (str): The duration string.

    Returns:
        float: The duration in seconds.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration '{value}'")

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration '{value}'")
        total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration '{value}'")
    return sign * total


def parse_key_value(value: str) -> Tuple[str, str]:
    """Split a ``KEY=VALUE`` string. Both parts are required."""
    key, separator, item = value.partition("=")
    key = key.strip()
    if not separator or not key:
        raise ValueError(f"expected KEY=VALUE, got '{value}'")
    return key, item.strip()


def parse_label_map(values: Iterable[str]) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for value in values:
        key, item = parse_key_value(value)
        labels[key] = item
    return labels


def parse_annotation_marker(value: str) -> Tuple[str, Optional[str]]:
    """
    Split a ``KEY[=VALUE]`` annotation marker.

    Returns:
        Tuple[str, Optional[str]]: The key, and the value or None when any value matches.
    """
    key, separator, item = value.partition("=")
    key = key.strip()
    if not key:
        raise ValueError(f"expected KEY[=VALUE], got '{value}'")
    return key, (item.strip() if separator else None)


def parse_condition_spec(value: str) -> ConditionSpec:
    """Parse a ``TYPE[=STATE]`` node condition spec. The state defaults to ``True``."""
    condition_type, separator, status = value.partition("=")
    condition_type = condition_type.strip()
    status = status.strip()
    if not condition_type or (separator and not status):
        raise ValueError(f"expected TYPE[=STATE], got '{value}'")
    return ConditionSpec(type=condition_type, status=status or CONDITION_TRUE)


def parse_listen_address(value: str) -> Tuple[str, int]:
    """Split a ``[HOST]:PORT`` listen address. An empty host means all interfaces."""
    host, separator, port = value.rpartition(":")
    if not separator or not port.isdigit():
        raise ValueError(f"expected [HOST]:PORT, got '{value}'")
    return (host.strip("[]") or "0.0.0.0"), int(port)
