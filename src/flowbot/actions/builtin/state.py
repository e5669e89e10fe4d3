"""State actions — context variables, or persisted variables when scoped.

A variable is persisted through the state manager when the action names a
``scope`` or the variable is declared in the spec; otherwise it lives in the
execution context for the rest of the invocation.
"""

from __future__ import annotations

import copy
from typing import Any

from flowbot.actions.models import ActionHandler, ActionResult
from flowbot.flows.models import ExecutionContext
from flowbot.utils.duration import parse_duration


def _var_name(config: dict[str, Any]) -> str | None:
    return config.get("key") or config.get("var") or config.get("name")


def _needs_var(config: dict[str, Any]) -> bool | str:
    if not _var_name(config):
        return f"'{config.get('action')}' requires 'key' (or 'var')"
    return True


def _persisted(config: dict[str, Any], ctx: ExecutionContext, name: str) -> bool:
    state = ctx.services.state
    if state is None:
        return False
    return config.get("scope") is not None or state.declared(name) is not None


async def _read(config: dict[str, Any], ctx: ExecutionContext, name: str) -> Any:
    if _persisted(config, ctx, name):
        return await ctx.services.state.get(config.get("scope"), name, ctx)
    if name in ctx:
        return copy.deepcopy(ctx[name])
    return ctx.state.get(name)


async def _write(config: dict[str, Any], ctx: ExecutionContext, name: str, value: Any) -> None:
    if _persisted(config, ctx, name):
        ttl = parse_duration(config["ttl"]) if config.get("ttl") is not None else None
        await ctx.services.state.set(config.get("scope"), name, value, ctx, ttl=ttl)
        ctx.state[name] = value
    else:
        ctx[name] = value


async def _set(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    name = _var_name(config)
    value = await ctx.resolve(config.get("value"))
    await _write(config, ctx, name, value)
    return ActionResult.ok(value, action="set")


async def _step(config: dict[str, Any], ctx: ExecutionContext, sign: int) -> ActionResult:
    name = _var_name(config)
    by = await ctx.resolve(config.get("by", 1))
    amount = sign * float(by)
    if amount.is_integer():
        amount = int(amount)
    if _persisted(config, ctx, name):
        value = await ctx.services.state.increment(config.get("scope"), name, amount, ctx)
        ctx.state[name] = value
    else:
        value = (await _read(config, ctx, name) or 0) + amount
        ctx[name] = value
    return ActionResult.ok(value, action="increment" if sign > 0 else "decrement")


async def _increment(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    return await _step(config, ctx, 1)


async def _decrement(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    return await _step(config, ctx, -1)


async def _list_push(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    name = _var_name(config)
    current = await _read(config, ctx, name)
    items = list(current) if isinstance(current, list | tuple) else []
    items.append(await ctx.resolve(config.get("value")))
    await _write(config, ctx, name, items)
    return ActionResult.ok(items, action="list_push")


async def _list_remove(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    name = _var_name(config)
    current = await _read(config, ctx, name)
    items = list(current) if isinstance(current, list | tuple) else []
    if config.get("index") is not None:
        index = int(await ctx.value_of(config["index"]))
        if -len(items) <= index < len(items):
            items.pop(index)
    else:
        value = await ctx.resolve(config.get("value"))
        if value in items:
            items.remove(value)
    await _write(config, ctx, name, items)
    return ActionResult.ok(items, action="list_remove")


async def _set_map(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    name = _var_name(config)
    current = await _read(config, ctx, name)
    mapping = dict(current) if isinstance(current, dict) else {}
    field_name = str(await ctx.resolve(config.get("map_key")))
    mapping[field_name] = await ctx.resolve(config.get("value"))
    await _write(config, ctx, name, mapping)
    return ActionResult.ok(mapping, action="set_map")


async def _delete_map(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    name = _var_name(config)
    current = await _read(config, ctx, name)
    mapping = dict(current) if isinstance(current, dict) else {}
    mapping.pop(str(await ctx.resolve(config.get("map_key"))), None)
    await _write(config, ctx, name, mapping)
    return ActionResult.ok(mapping, action="delete_map")


async def _unset(config: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
    name = _var_name(config)
    if _persisted(config, ctx, name):
        removed = await ctx.services.state.delete(config.get("scope"), name, ctx)
        ctx.state.pop(name, None)
    else:
        removed = name in ctx
        del ctx[name]
    return ActionResult.ok(removed, action="unset")


def _needs_map_key(config: dict[str, Any]) -> bool | str:
    verdict = _needs_var(config)
    if verdict is not True:
        return verdict
    if config.get("map_key") is None:
        return f"'{config.get('action')}' requires 'map_key'"
    return True


def get_state_actions() -> list[ActionHandler]:
    specs = [
        ("set", _set, _needs_var, "Set a variable"),
        ("increment", _increment, _needs_var, "Add to a numeric variable"),
        ("decrement", _decrement, _needs_var, "Subtract from a numeric variable"),
        ("list_push", _list_push, _needs_var, "Append to a list variable"),
        ("list_remove", _list_remove, _needs_var, "Remove from a list variable"),
        ("set_map", _set_map, _needs_map_key, "Set a key inside a map variable"),
        ("delete_map", _delete_map, _needs_map_key, "Remove a key from a map variable"),
        ("unset", _unset, _needs_var, "Delete a variable"),
    ]
    return [
        ActionHandler(name=name, execute=fn, validate=check, description=desc, category="state")
        for name, fn, check, desc in specs
    ]
