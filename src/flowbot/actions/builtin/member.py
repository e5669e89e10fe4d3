"""Member and role actions: roles, moderation, nicknames and voice moves.

Targets accept raw ids or mention markup (``<@!123>``, ``<@&9>``, ``<#5>``).
Actions that change someone's roles, nickname or voice channel fall back to
the triggering user; punitive actions (``kick``, ``ban``, ``timeout``, ...)
always need an explicit ``user``.
"""

from __future__ import annotations

from typing import Any

from flowbot.actions.builtin.message import _needs, _send
from flowbot.actions.models import ActionHandler
from flowbot.errors import ActionValidationError
from flowbot.utils.duration import parse_duration

# Discord caps member timeouts at 28 days
MAX_TIMEOUT_SECONDS = 28 * 86400.0

_MENTION_CHARS = "<@!&#>"

_GUILD = (("guild", "guild_id"),)
_SELF = (("guild", "guild_id"), ("user", "user_id"))


def snowflake(value: Any) -> Any:
    """Strip mention markup down to the bare id."""
    if isinstance(value, str):
        return value.strip().strip(_MENTION_CHARS)
    return value


def _ids(*keys: str):
    def prepare(payload: dict[str, Any]) -> dict[str, Any]:
        for key in keys:
            if key in payload:
                payload[key] = snowflake(payload[key])
        return payload

    return prepare


def _validate_timeout(config: dict[str, Any]) -> bool | str:
    verdict = _needs("user", "duration")(config)
    if verdict is not True:
        return verdict
    if isinstance(config["duration"], str) and "${" in config["duration"]:
        return True
    try:
        seconds = parse_duration(config["duration"])
    except ValueError as exc:
        return str(exc)
    if seconds > MAX_TIMEOUT_SECONDS:
        return "timeout duration exceeds 28d"
    return True


def _prepare_timeout(payload: dict[str, Any]) -> dict[str, Any]:
    payload = _ids("user")(payload)
    try:
        seconds = parse_duration(payload["duration"])
    except ValueError as exc:
        raise ActionValidationError("timeout", str(exc)) from None
    payload["seconds"] = min(seconds, MAX_TIMEOUT_SECONDS)
    return payload


def _prepare_ban(payload: dict[str, Any]) -> dict[str, Any]:
    payload = _ids("user")(payload)
    days = payload.pop("delete_message_days", None)
    if days:
        payload["delete_message_seconds"] = int(float(days) * 86400)
    return payload


def get_member_actions() -> list[ActionHandler]:
    return [
        ActionHandler(
            name="assign_role",
            execute=_send("assign_role", _SELF, _ids("user", "role")),
            validate=_needs("role"),
            description="Give a member a role",
            category="member",
        ),
        ActionHandler(
            name="remove_role",
            execute=_send("remove_role", _SELF, _ids("user", "role")),
            validate=_needs("role"),
            description="Take a role away from a member",
            category="member",
        ),
        ActionHandler(
            name="toggle_role",
            execute=_send("toggle_role", _SELF, _ids("user", "role")),
            validate=_needs("role"),
            description="Add a role if the member lacks it, otherwise remove it",
            category="member",
        ),
        ActionHandler(
            name="kick",
            execute=_send("kick", _GUILD, _ids("user")),
            validate=_needs("user"),
            description="Remove a member from the guild",
            category="member",
        ),
        ActionHandler(
            name="ban",
            execute=_send("ban", _GUILD, _prepare_ban),
            validate=_needs("user"),
            description="Ban a user, optionally deleting recent messages",
            category="member",
        ),
        ActionHandler(
            name="unban",
            execute=_send("unban", _GUILD, _ids("user")),
            validate=_needs("user"),
            description="Lift a ban",
            category="member",
        ),
        ActionHandler(
            name="timeout",
            execute=_send("timeout", _GUILD, _prepare_timeout),
            validate=_validate_timeout,
            description="Mute a member for a duration",
            category="member",
        ),
        ActionHandler(
            name="remove_timeout",
            execute=_send("remove_timeout", _GUILD, _ids("user")),
            validate=_needs("user"),
            description="End a member's timeout early",
            category="member",
        ),
        ActionHandler(
            name="set_nickname",
            execute=_send("set_nickname", _SELF, _ids("user")),
            description="Set or clear (empty nickname) a member's nickname",
            category="member",
        ),
        ActionHandler(
            name="move_member",
            execute=_send("move_member", _SELF, _ids("user", "channel")),
            validate=_needs("channel"),
            description="Move a member to another voice channel",
            category="member",
        ),
    ]
