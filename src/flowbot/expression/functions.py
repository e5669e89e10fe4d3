"""Built-in functions callable from expressions."""

from __future__ import annotations

import math
import random as _random
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from flowbot.errors import LoopLimitExceeded

# Largest list range() may build; matches the default loop budget
MAX_RANGE = 10_000


def _now() -> str:
    return datetime.now(UTC).isoformat()


def epoch_seconds(value: Any = None) -> int:
    """Epoch seconds for *value* (ISO string or number), or for now."""
    if value is None:
        return int(time.time())
    if isinstance(value, int | float):
        return int(value)
    return int(datetime.fromisoformat(str(value)).timestamp())


def _random_float(low: float | None = None, high: float | None = None) -> float:
    if low is None:
        return _random.random()
    if high is None:
        low, high = 0, low
    return _random.uniform(low, high)


def _randint(low: int, high: int) -> int:
    return _random.randint(int(low), int(high))


def _choice(items: Any) -> Any:
    if not items:
        return None
    return _random.choice(list(items))


def _length(value: Any) -> int:
    if value is None:
        return 0
    return len(value)


def _range(*args: Any) -> list[int]:
    # Materialized so results can be stored in state or interpolated
    span = range(*(int(a) for a in args))
    if len(span) > MAX_RANGE:
        raise LoopLimitExceeded(f"range of {len(span)} items exceeds {MAX_RANGE}")
    return list(span)


def mention_for(identifier: Any, kind: str = "user") -> str:
    prefix = {"user": "@", "role": "@&", "channel": "#"}.get(kind, "@")
    return f"<{prefix}{identifier}>"


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(result) else result


def get_builtin_functions() -> dict[str, Callable[..., Any]]:
    """Return the default function table for a new evaluator."""
    return {
        "now": _now,
        "timestamp": epoch_seconds,
        "random": _random_float,
        "randint": _randint,
        "choice": _choice,
        "len": _length,
        "str": lambda value="": "" if value is None else str(value),
        "int": to_int,
        "float": to_float,
        "bool": bool,
        "round": round,
        "min": min,
        "max": max,
        "abs": abs,
        "lower": lambda value: str(value).lower(),
        "upper": lambda value: str(value).upper(),
        "range": _range,
        "mention": mention_for,
    }
