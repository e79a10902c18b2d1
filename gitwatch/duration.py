"""
Human-readable durations, e.g. 500ms, 10s, 1m, 1h30m, 2d.
"""

from __future__ import annotations

import re

from gitwatch.errors import ConfigError

UNITS = {
    "d": 86400.0,
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
}

_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|d|h|m|s)")


def parse_duration(value: str | int | float | None) -> float:
    """
    Parse a duration into seconds.

    Bare numbers are seconds. Parts can be combined, like 1m30s.

    Raises:
        ConfigError: If the value cannot be parsed.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"Duration cannot be negative: {value}")
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ConfigError("Duration cannot be empty")

    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ConfigError(f"Duration cannot be negative: {value}")
        return seconds

    total = 0.0
    position = 0
    for match in _PART.finditer(text):
        if text[position:match.start()].strip():
            raise ConfigError(f"Invalid duration {value!r}")
        total += float(match.group(1)) * UNITS[match.group(2)]
        position = match.end()

    if position == 0 or text[position:].strip():
        raise ConfigError(f"Invalid duration {value!r}, use e.g. 30s, 5m or 1h")

    return total


def format_duration(seconds: float) -> str:
    """Format seconds the way parse_duration reads them, e.g. 90 -> 1m30s."""
    millis = round(seconds * 1000)
    if millis <= 0:
        return "0s"

    parts = []
    for unit in ("d", "h", "m", "s", "ms"):
        size = round(UNITS[unit] * 1000)
        amount, millis = divmod(millis, size)
        if amount:
            parts.append(f"{amount}{unit}")
    return "".join(parts)
