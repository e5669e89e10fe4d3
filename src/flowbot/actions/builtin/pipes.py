"""Actions that talk to configured pipes."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from flowbot.actions.models import ActionHandler, ActionResult
from flowbot.errors import PipeError
from flowbot.flows.models import ExecutionContext
from flowbot.pipes.base import PipeResponse
from flowbot.pipes.database import DatabasePipe


def _needs_pipe(config: dict[str, Any]) -> bool | str:
    if not config.get("pipe"):
        return f"'{config.get('action')}' requires 'pipe'"
    return True


def _from_response(response: PipeResponse, action: str) -> ActionResult:
    if response.success:
        return ActionResult.ok(response.data, action=action)
    error = PipeError(response.error or "Pipe request failed", {"status": response.status})
    return ActionResult.fail(error, action=action)


async def _pipe_request(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    pipes = ctx.services.pipes
    if pipes is None:
        return ActionResult.fail("No pipes are configured", action="pipe_request")
    response = await pipes.request(
        await ctx.interpolate(config["pipe"]),
        method=str(config.get("method", "GET")).upper(),
        path=await ctx.interpolate(config.get("path", "")),
        body=await ctx.resolve(config.get("body")),
        params=await ctx.resolve(config.get("params")),
        headers=await ctx.resolve(config.get("headers")),
    )
    return _from_response(response, "pipe_request")


async def _pipe_send(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    pipes = ctx.services.pipes
    if pipes is None:
        return ActionResult.fail("No pipes are configured", action="pipe_send")
    data = await ctx.resolve(config.get("data", config.get("message")))
    options = {
        key: await ctx.resolve(config[key])
        for key in ("topic", "qos", "retain", "event", "method", "path", "params", "headers")
        if key in config
    }
    result = await pipes.send(await ctx.interpolate(config["pipe"]), data, **options)
    if isinstance(result, PipeResponse):
        return _from_response(result, "pipe_send")
    return ActionResult.ok(result, action="pipe_send")


def _validate_query(config: dict[str, Any]) -> bool | str:
    verdict = _needs_pipe(config)
    if verdict is not True:
        return verdict
    if not config.get("query") and not config.get("sql"):
        return "'db_query' requires 'query' (a named query) or 'sql'"
    return True


async def _db_query(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    pipes = ctx.services.pipes
    if pipes is None:
        return ActionResult.fail("No pipes are configured", action="db_query")
    pipe = _database(ctx, await ctx.interpolate(config["pipe"]))
    params = await ctx.resolve(config.get("params") or {})
    if config.get("query"):
        rows = await pipe.query(config["query"], params)
    else:
        rows = await pipe.execute_sql(config["sql"], params)
    return ActionResult.ok(rows, action="db_query")


def _database(ctx: ExecutionContext, name: str) -> DatabasePipe:
    pipe = ctx.services.pipes.get(name)
    if not isinstance(pipe, DatabasePipe):
        raise PipeError(f"Pipe '{name}' is not a database pipe", {"pipe": name})
    return pipe


def _needs_table(*keys: str):
    def validate(config: dict[str, Any]) -> bool | str:
        verdict = _needs_pipe(config)
        if verdict is not True:
            return verdict
        missing = [key for key in ("table", *keys) if not config.get(key)]
        if missing:
            return f"'{config.get('action')}' requires {', '.join(repr(k) for k in missing)}"
        return True

    return validate


async def _row(config: dict[str, Any], ctx: ExecutionContext, key: str) -> Mapping[str, Any]:
    # A string is an expression producing the row, e.g. ``data: "${profile}"``
    value = await ctx.value_of(config.get(key))
    if not isinstance(value, Mapping):
        raise PipeError(f"'{key}' must be a mapping of column to value", {key: value})
    return value


async def _db_insert(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    if ctx.services.pipes is None:
        return ActionResult.fail("No pipes are configured", action="db_insert")
    pipe = _database(ctx, await ctx.interpolate(config["pipe"]))
    data = await _row(config, ctx, "data")
    await pipe.insert(await ctx.interpolate(config["table"]), data)
    return ActionResult.ok(dict(data), action="db_insert")


async def _db_update(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    if ctx.services.pipes is None:
        return ActionResult.fail("No pipes are configured", action="db_update")
    pipe = _database(ctx, await ctx.interpolate(config["pipe"]))
    count = await pipe.update(
        await ctx.interpolate(config["table"]),
        await _row(config, ctx, "where"),
        await _row(config, ctx, "data"),
        upsert=bool(config.get("upsert")),
    )
    return ActionResult.ok(count, action="db_update")


async def _db_delete(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    if ctx.services.pipes is None:
        return ActionResult.fail("No pipes are configured", action="db_delete")
    pipe = _database(ctx, await ctx.interpolate(config["pipe"]))
    count = await pipe.delete(
        await ctx.interpolate(config["table"]), await _row(config, ctx, "where")
    )
    return ActionResult.ok(count, action="db_delete")


def get_pipe_actions() -> list[ActionHandler]:
    return [
        ActionHandler(
            name="pipe_request",
            execute=_pipe_request,
            validate=_needs_pipe,
            description="Make a request through an HTTP pipe",
            category="pipes",
        ),
        ActionHandler(
            name="pipe_send",
            execute=_pipe_send,
            validate=_needs_pipe,
            description="Send data through any pipe",
            category="pipes",
        ),
        ActionHandler(
            name="db_query",
            execute=_db_query,
            validate=_validate_query,
            description="Run a query on a database pipe",
            category="pipes",
        ),
        ActionHandler(
            name="db_insert",
            execute=_db_insert,
            validate=_needs_table("data"),
            description="Insert a row into a database table",
            category="pipes",
        ),
        ActionHandler(
            name="db_update",
            execute=_db_update,
            validate=_needs_table("data", "where"),
            description="Update (or upsert) rows in a database table",
            category="pipes",
        ),
        ActionHandler(
            name="db_delete",
            execute=_db_delete,
            validate=_needs_table("where"),
            description="Delete rows from a database table",
            category="pipes",
        ),
    ]
