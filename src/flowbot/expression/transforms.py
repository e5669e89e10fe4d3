"""Built-in pipe transforms, applied as ``value|name`` or ``value|name(arg, ...)``."""

from __future__ import annotations

import json
import math
import random
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from flowbot.expression.functions import epoch_seconds, mention_for, to_float, to_int


def _truncate(value: Any, length: int = 100, suffix: str = "...") -> str:
    text = "" if value is None else str(value)
    if len(text) <= length:
        return text
    return text[: max(int(length) - len(suffix), 0)] + suffix


def _default(value: Any, fallback: Any = "") -> Any:
    return fallback if value is None or value == "" else value


def _size(value: Any) -> int:
    if value is None:
        return 0
    return len(value)


def _join(value: Any, delimiter: str = ", ") -> str:
    if value is None:
        return ""
    return delimiter.join("" if item is None else str(item) for item in value)


def _split(value: Any, delimiter: str | None = None) -> list[str]:
    if value is None:
        return []
    return str(value).split(delimiter)


def _first(value: Any) -> Any:
    return value[0] if value else None


def _last(value: Any) -> Any:
    return value[-1] if value else None


def _nth(value: Any, index: int) -> Any:
    try:
        return value[int(index)]
    except (IndexError, KeyError, TypeError):
        return None


def _sort(value: Any, key: str | None = None) -> list[Any]:
    items = list(value or [])
    if key is None:
        return sorted(items)
    return sorted(items, key=lambda item: get_path(item, key))


def _unique(value: Any) -> list[Any]:
    seen: list[Any] = []
    for item in value or []:
        if item not in seen:
            seen.append(item)
    return seen


def _flatten(value: Any) -> list[Any]:
    flat: list[Any] = []
    for item in value or []:
        if isinstance(item, list | tuple):
            flat.extend(item)
        else:
            flat.append(item)
    return flat


def _filter(value: Any, key: str, expected: Any = True) -> list[Any]:
    return [item for item in value or [] if get_path(item, key) == expected]


def _pluck(value: Any, key: str) -> list[Any]:
    return [get_path(item, key) for item in value or []]


def get_path(value: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path through mappings and sequences."""
    current = value
    for part in str(path).split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list | tuple) and part.lstrip("-").isdigit():
            try:
                current = current[int(part)]
            except IndexError:
                return default
        else:
            return default
    return current


def _to_json(value: Any, indent: int | None = None) -> str:
    separators = (",", ":") if indent is None else None
    return json.dumps(value, indent=indent, separators=separators, default=str)


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_number(value: Any) -> int | float:
    number = to_float(value)
    return int(number) if number.is_integer() else number


def _round(value: Any, digits: int = 0) -> int | float:
    rounded = round(to_float(value), int(digits))
    return int(rounded) if int(digits) == 0 else rounded


def _pluralize(count: Any, singular: str, plural: str | None = None) -> str:
    if to_float(count) == 1:
        return singular
    return plural if plural is not None else f"{singular}s"


def _ordinal(value: Any) -> str:
    number = to_int(value)
    if 10 <= number % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")
    return f"{number}{suffix}"


def _format_number(value: Any) -> str:
    number = _to_number(value)
    return f"{number:,}"


def _duration(value: Any) -> str:
    """Milliseconds to a compact ``"1h 2m 3s"`` string."""
    total = int(to_float(value) // 1000)
    parts: list[str] = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        amount, total = divmod(total, size)
        if amount:
            parts.append(f"{amount}{unit}")
    if total or not parts:
        parts.append(f"{total}s")
    return " ".join(parts)


def _timestamp_format(value: Any = None, style: str | None = None) -> int | str:
    """Epoch seconds, or a chat timestamp marker when *style* is given."""
    if isinstance(value, datetime):
        seconds = int(value.timestamp())
    else:
        seconds = epoch_seconds(value)
    if style is None:
        return seconds
    return f"<t:{seconds}:{style}>"


def _slice(value: Any, start: int = 0, end: int | None = None) -> Any:
    if value is None:
        return []
    return value[int(start) : None if end is None else int(end)]


def _replace(value: Any, old: str, new: str = "") -> str:
    return _to_string(value).replace(str(old), str(new))


def get_builtin_transforms() -> dict[str, Callable[..., Any]]:
    """Return the default transform table for a new evaluator."""
    return {
        # Strings
        "upper": lambda v: _to_string(v).upper(),
        "lower": lambda v: _to_string(v).lower(),
        "capitalize": lambda v: _to_string(v).capitalize(),
        "trim": lambda v: _to_string(v).strip(),
        "truncate": _truncate,
        "replace": _replace,
        "split": _split,
        "padStart": lambda v, width, fill=" ": _to_string(v).rjust(int(width), str(fill)[:1]),
        "padEnd": lambda v, width, fill=" ": _to_string(v).ljust(int(width), str(fill)[:1]),
        "pluralize": _pluralize,
        "mention": mention_for,
        # Collections
        "default": _default,
        "length": _size,
        "size": _size,
        "join": _join,
        "first": _first,
        "last": _last,
        "nth": _nth,
        "slice": _slice,
        "reverse": lambda v: list(reversed(list(v or []))),
        "sort": _sort,
        "unique": _unique,
        "flatten": _flatten,
        "filter": _filter,
        "map": _pluck,
        "pluck": _pluck,
        "pick": lambda v: random.choice(list(v)) if v else None,
        "keys": lambda v: list((v or {}).keys()),
        "values": lambda v: list((v or {}).values()),
        "entries": lambda v: [[k, item] for k, item in (v or {}).items()],
        "get": get_path,
        # Conversion
        "json": _to_json,
        "string": _to_string,
        "number": _to_number,
        "int": to_int,
        "float": to_float,
        "boolean": bool,
        # Numbers
        "round": _round,
        "floor": lambda v: math.floor(to_float(v)),
        "ceil": lambda v: math.ceil(to_float(v)),
        "abs": lambda v: abs(_to_number(v)),
        "format": _format_number,
        "ordinal": _ordinal,
        "duration": _duration,
        "timestamp": _timestamp_format,
    }
