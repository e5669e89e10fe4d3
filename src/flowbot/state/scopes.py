"""State scopes and storage key construction."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from flowbot.errors import ScopeContextError

Scope = Literal["global", "guild", "channel", "user", "member"]

SCOPES: tuple[str, ...] = ("global", "guild", "channel", "user", "member")

# Identifiers each scope needs from the trigger context, in key order
SCOPE_IDS: dict[str, tuple[str, ...]] = {
    "global": (),
    "guild": ("guild_id",),
    "channel": ("channel_id",),
    "user": ("user_id",),
    "member": ("guild_id", "user_id"),
}


def scope_ids(scope: str, context: Mapping[str, Any]) -> dict[str, str]:
    """Pick the identifiers *scope* needs out of *context*.

    Raises:
        ScopeContextError: If the scope is unknown or an identifier is missing.
    """
    if scope not in SCOPE_IDS:
        raise ScopeContextError(f"Unknown state scope: {scope}", {"scope": scope})
    ids: dict[str, str] = {}
    for name in SCOPE_IDS[scope]:
        value = context.get(name)
        if value is None or value == "":
            raise ScopeContextError(
                f"Scope '{scope}' requires '{name}' in the context",
                {"scope": scope, "missing": name},
            )
        ids[name] = str(value)
    return ids


def build_key(scope: str, name: str, ids: Mapping[str, Any] | None = None) -> str:
    """``scope:name[:id...]``, e.g. ``member:xp:123:456``."""
    ids = ids or {}
    parts = [scope, name]
    for id_name in SCOPE_IDS.get(scope, ()):
        if id_name not in ids:
            raise ScopeContextError(
                f"Scope '{scope}' requires '{id_name}'", {"scope": scope, "missing": id_name}
            )
        parts.append(str(ids[id_name]))
    return ":".join(parts)
