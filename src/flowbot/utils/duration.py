"""Duration parsing — ``"500ms"``, ``"5s"``, ``"2m"``, ``"1h"``, ``"1d"``."""

from __future__ import annotations

import re

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)

_UNIT_SECONDS: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration(value: str | int | float | None, default: float | None = None) -> float:
    """Convert a duration spec to seconds.

    Bare numbers are seconds. ``None`` returns *default* when one is given.

    Raises:
        ValueError: If the value is not a valid duration and no default applies.
    """
    if value is None:
        if default is None:
            raise ValueError("Duration is required")
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        if value < 0:
            raise ValueError(f"Duration must be non-negative: {value!r}")
        return float(value)

    match = _DURATION_RE.match(value)
    if not match:
        if default is not None:
            return default
        raise ValueError(f"Invalid duration: {value!r}. Expected e.g. '500ms', '5s', '2m', '1h'.")
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return amount * _UNIT_SECONDS[unit]
