"""Message actions, delivered through the platform collaborator."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from flowbot.actions.models import ActionHandler, ActionResult, handler_config
from flowbot.flows.models import ExecutionContext


def _needs_content(config: dict[str, Any]) -> bool | str:
    if config.get("content") is None and not config.get("embed") and not config.get("embeds"):
        return f"'{config.get('action')}' requires 'content' or 'embed'"
    return True


def _needs(*keys: str):
    def validate(config: dict[str, Any]) -> bool | str:
        missing = [key for key in keys if config.get(key) in (None, "")]
        if missing:
            return f"'{config.get('action')}' requires {', '.join(repr(k) for k in missing)}"
        return True

    return validate


def _send(
    kind: str,
    defaults: tuple[tuple[str, str], ...] = (),
    prepare: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
):
    """Build a handler that forwards its resolved config to the platform as *kind*.

    *defaults* pairs a payload key with the context variable that fills it
    when the config leaves it out. *prepare* gets the final payload.
    """

    async def execute(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        platform = ctx.services.platform
        if platform is None:
            return ActionResult.fail("No platform gateway is configured", action=kind)
        payload = await ctx.resolve(handler_config(config))
        for key, source in defaults:
            if payload.get(key) is None and ctx.get(source) is not None:
                payload[key] = ctx.get(source)
        if prepare is not None:
            payload = prepare(payload)
        return ActionResult.ok(await platform.perform(kind, payload), action=kind)

    return execute


def get_message_actions() -> list[ActionHandler]:
    return [
        ActionHandler(
            name="reply",
            execute=_send("reply", (("channel", "channel_id"), ("message_id", "message_id"))),
            validate=_needs_content,
            description="Reply to the triggering interaction or message",
            category="message",
        ),
        ActionHandler(
            name="send_message",
            execute=_send("send_message", (("channel", "channel_id"),)),
            validate=_needs_content,
            description="Send a message to a channel",
            category="message",
        ),
        ActionHandler(
            name="send_dm",
            execute=_send("send_dm", (("user", "user_id"),)),
            validate=_needs_content,
            description="Send a direct message to a user",
            category="message",
        ),
        ActionHandler(
            name="edit_message",
            execute=_send("edit_message", (("channel", "channel_id"),)),
            validate=_needs("message_id"),
            description="Edit a previously sent message",
            category="message",
        ),
        ActionHandler(
            name="add_reaction",
            execute=_send("add_reaction", (("message_id", "message_id"),)),
            validate=_needs("emoji"),
            description="React to a message",
            category="message",
        ),
        ActionHandler(
            name="defer",
            execute=_send("defer"),
            description="Acknowledge an interaction to respond later",
            category="message",
        ),
    ]
