"""Utility actions: logging, waiting, custom events and outbound webhooks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from flowbot.actions.models import ActionHandler, ActionResult
from flowbot.flows.models import ExecutionContext
from flowbot.utils.duration import parse_duration

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Upper bound for a single ``wait`` action
MAX_WAIT_SECONDS = 300.0


async def _log(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    message = await ctx.interpolate(config.get("message", ""))
    level = _LOG_LEVELS.get(str(config.get("level", "info")).lower(), logging.INFO)
    logger.log(level, "[%s] %s", ctx.frame.flow_name, message)
    return ActionResult.ok(message, action="log")


def _validate_wait(config: dict[str, Any]) -> bool | str:
    if isinstance(config.get("duration"), str) and "${" in config["duration"]:
        return True
    try:
        seconds = parse_duration(config.get("duration"))
    except ValueError as exc:
        return str(exc)
    if seconds > MAX_WAIT_SECONDS:
        return f"wait duration exceeds {MAX_WAIT_SECONDS:g}s"
    return True


async def _wait(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    seconds = parse_duration(await ctx.resolve(config.get("duration")))
    await asyncio.sleep(min(seconds, MAX_WAIT_SECONDS))
    return ActionResult.ok(seconds, action="wait")


async def _emit(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    dispatcher = ctx.services.dispatcher
    if dispatcher is None:
        return ActionResult.fail("No dispatcher is available for emit", action="emit")
    event = await ctx.interpolate(config.get("event", ""))
    data = await ctx.resolve(config.get("data") or {})
    if config.get("wait"):
        outcomes = await dispatcher.emit(event, data)
        return ActionResult.ok([o.handler for o in outcomes], action="emit")
    dispatcher.dispatch_event(event, data)
    return ActionResult.ok(event, action="emit")


def _validate_webhook(config: dict[str, Any]) -> bool | str:
    if not config.get("url"):
        return "'webhook_send' requires 'url'"
    return True


async def _webhook_send(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    url = await ctx.interpolate(config["url"])
    body = await ctx.resolve(config.get("body") or {})
    for key in ("content", "username", "avatar_url", "embeds"):
        if config.get(key) is not None:
            body[key] = await ctx.resolve(config[key])
    headers = await ctx.resolve(config.get("headers") or {})
    timeout = parse_duration(config.get("timeout"), default=10.0)

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.request(
                str(config.get("method", "POST")).upper(), url, json=body, headers=headers
            )
    except httpx.RequestError as exc:
        logger.warning("Webhook send to %s failed: %s", url, exc)
        return ActionResult.fail(f"Webhook request failed: {exc}", action="webhook_send")

    if not response.is_success:
        return ActionResult.fail(
            f"Webhook returned HTTP {response.status_code}", action="webhook_send"
        )
    return ActionResult.ok({"status": response.status_code}, action="webhook_send")


def get_misc_actions() -> list[ActionHandler]:
    return [
        ActionHandler(
            name="log",
            execute=_log,
            description="Write to the bot log",
            category="misc",
        ),
        ActionHandler(
            name="wait",
            execute=_wait,
            validate=_validate_wait,
            description="Pause the sequence",
            category="misc",
        ),
        ActionHandler(
            name="emit",
            execute=_emit,
            description="Dispatch a custom event",
            category="misc",
        ),
        ActionHandler(
            name="webhook_send",
            execute=_webhook_send,
            validate=_validate_webhook,
            description="Send a payload to an outbound webhook URL",
            category="misc",
        ),
    ]
