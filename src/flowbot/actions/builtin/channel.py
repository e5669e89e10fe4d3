"""Channel, thread and role management actions."""

from __future__ import annotations

from typing import Any

from flowbot.actions.builtin.member import _ids, snowflake
from flowbot.actions.builtin.message import _needs, _send
from flowbot.actions.models import ActionHandler

CHANNEL_TYPES = ("text", "voice", "category", "announcement", "stage", "forum")

# Minutes; the values Discord accepts for thread auto-archive
ARCHIVE_DURATIONS = (60, 1440, 4320, 10080)

_GUILD = (("guild", "guild_id"),)


def _validate_create_channel(config: dict[str, Any]) -> bool | str:
    verdict = _needs("name")(config)
    if verdict is not True:
        return verdict
    kind = config.get("type", "text")
    if isinstance(kind, str) and "${" in kind:
        return True
    if kind not in CHANNEL_TYPES:
        return f"unknown channel type '{kind}' (expected one of {', '.join(CHANNEL_TYPES)})"
    return True


def _prepare_channel(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("type", "text")
    if payload.get("parent") is not None:
        payload["parent"] = snowflake(payload["parent"])
    for overwrite in payload.get("permission_overwrites") or []:
        if isinstance(overwrite, dict) and "id" in overwrite:
            overwrite["id"] = snowflake(overwrite["id"])
    return payload


def _validate_thread(config: dict[str, Any]) -> bool | str:
    verdict = _needs("name")(config)
    if verdict is not True:
        return verdict
    if config.get("type", "public") not in ("public", "private"):
        return "thread type must be 'public' or 'private'"
    archive = config.get("auto_archive_duration")
    if archive is not None and archive not in ARCHIVE_DURATIONS:
        return f"auto_archive_duration must be one of {ARCHIVE_DURATIONS}"
    return True


def _prepare_thread(payload: dict[str, Any]) -> dict[str, Any]:
    payload.setdefault("type", "public")
    payload.setdefault("auto_archive_duration", 1440)
    return _ids("channel", "message")(payload)


def _validate_permissions(config: dict[str, Any]) -> bool | str:
    verdict = _needs("channel")(config)
    if verdict is not True:
        return verdict
    if not config.get("user") and not config.get("role"):
        return "'set_channel_permissions' requires 'user' or 'role'"
    return True


def parse_color(value: Any) -> Any:
    """``"#ff8800"`` / ``"0xff8800"`` to an int; anything else passes through."""
    if isinstance(value, str):
        text = value.strip().lower()
        for prefix in ("#", "0x"):
            if text.startswith(prefix):
                return int(text[len(prefix) :], 16)
    return value


def _prepare_role(payload: dict[str, Any]) -> dict[str, Any]:
    if "color" in payload:
        payload["color"] = parse_color(payload["color"])
    return _ids("role")(payload)


def get_channel_actions() -> list[ActionHandler]:
    return [
        ActionHandler(
            name="create_channel",
            execute=_send("create_channel", _GUILD, _prepare_channel),
            validate=_validate_create_channel,
            description="Create a text, voice, category, stage or forum channel",
            category="channel",
        ),
        ActionHandler(
            name="edit_channel",
            execute=_send("edit_channel", (("channel", "channel_id"),), _ids("channel", "parent")),
            description="Change a channel's name, topic, position or limits",
            category="channel",
        ),
        ActionHandler(
            name="delete_channel",
            execute=_send("delete_channel", prepare=_ids("channel")),
            validate=_needs("channel"),
            description="Delete a channel",
            category="channel",
        ),
        ActionHandler(
            name="create_thread",
            execute=_send("create_thread", (("channel", "channel_id"),), _prepare_thread),
            validate=_validate_thread,
            description="Start a thread in a channel or from a message",
            category="channel",
        ),
        ActionHandler(
            name="archive_thread",
            execute=_send("archive_thread", (("thread", "channel_id"),), _ids("thread")),
            description="Archive (and optionally lock) a thread",
            category="channel",
        ),
        ActionHandler(
            name="set_channel_permissions",
            execute=_send("set_channel_permissions", prepare=_ids("channel", "user", "role")),
            validate=_validate_permissions,
            description="Allow or deny permissions for a user or role in a channel",
            category="channel",
        ),
        ActionHandler(
            name="create_role",
            execute=_send("create_role", _GUILD, _prepare_role),
            validate=_needs("name"),
            description="Create a role",
            category="channel",
        ),
        ActionHandler(
            name="edit_role",
            execute=_send("edit_role", _GUILD, _prepare_role),
            validate=_needs("role"),
            description="Change a role's name, color, hoist or permissions",
            category="channel",
        ),
        ActionHandler(
            name="delete_role",
            execute=_send("delete_role", _GUILD, _ids("role")),
            validate=_needs("role"),
            description="Delete a role",
            category="channel",
        ),
    ]
