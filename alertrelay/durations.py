"""Prometheus-style duration strings.

Accepts the same units as the alerting configuration it replaces:
``ms``, ``s``, ``m``, ``h``, ``d``, ``w`` and ``y``, possibly combined
(``1h30m``). Plain numbers are read as seconds.
"""

import re
from datetime import timedelta

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "y": 365 * 86400,
}

_DURATION_RE = re.compile(r"^((\d+)(ms|s|m|h|d|w|y))+$")
_PART_RE = re.compile(r"(\d+)(ms|s|m|h|d|w|y)")


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """Parse a duration into a timedelta.

    Raises:
        ValueError: If the value is negative or not a valid duration
    """
    if isinstance(value, timedelta):
        if value < timedelta(0):
            raise ValueError(f"Duration cannot be negative: {value}")
        return value

    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration cannot be negative: {value}")
        return timedelta(seconds=value)

    text = value.strip()
    if text == "0":
        return timedelta(0)
    if not _DURATION_RE.match(text):
        raise ValueError(f"Invalid duration: {value!r}")

    seconds = sum(int(amount) * _UNIT_SECONDS[unit] for amount, unit in _PART_RE.findall(text))
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Render a timedelta in the compact form used by parse_duration."""
    total_ms = int(value.total_seconds() * 1000)
    if total_ms == 0:
        return "0s"

    parts = []
    for unit in ("w", "d", "h", "m", "s"):
        unit_ms = int(_UNIT_SECONDS[unit] * 1000)
        amount, total_ms = divmod(total_ms, unit_ms)
        if amount:
            parts.append(f"{amount}{unit}")
    if total_ms:
        parts.append(f"{total_ms}ms")
    return "".join(parts)
