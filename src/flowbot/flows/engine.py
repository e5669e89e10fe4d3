"""Flow engine — runs action sequences with an explicit call stack.

Control-flow instructions (``call_flow``, ``flow_if``, ``flow_while``, ...)
are interpreted here; every other action name is resolved through the
:class:`ActionRegistry`. A failed action ends its sequence unless the engine
runs with ``stop_on_error=False``, in which case the failure is recorded in
its :class:`ActionResult` and the next action runs. ``return`` (flow-local),
``abort`` (whole invocation) and cancellation always cut a sequence short.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

from flowbot.actions.models import ActionResult
from flowbot.errors import (
    ActionExecutionError,
    ActionValidationError,
    FlowAbortedError,
    FlowbotError,
    FlowNotFoundError,
    FlowParameterError,
    LoopLimitExceeded,
    RecursionLimitExceeded,
    SpecValidationError,
)
from flowbot.expression.evaluator import stringify
from flowbot.flows.models import ExecutionContext, Frame, FlowResult, Services
from flowbot.spec.models import FlowDefinition, FlowParameter

logger = logging.getLogger(__name__)

ControlFn = Callable[[dict[str, Any], ExecutionContext], Awaitable[ActionResult]]

# Nested action lists of each control instruction (``cases`` handled separately)
CONTROL_BODIES: dict[str, tuple[str, ...]] = {
    "call_flow": (),
    "return": (),
    "abort": (),
    "flow_if": ("then", "else"),
    "flow_switch": ("default",),
    "flow_while": ("do",),
    "repeat": ("do",),
    "parallel": ("actions",),
    "batch": ("each",),
    "try": ("try", "catch", "finally"),
}

# Control instructions whose ``as`` names a loop variable, not a result binding
_LOOP_BINDINGS = frozenset({"repeat", "batch"})

_PARAM_TYPES: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list | tuple),
    "object": lambda v: isinstance(v, dict),
    "any": lambda v: True,
}


def iter_actions(actions: list[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    """Yield every action in a list, descending into control-flow bodies."""
    for action in actions or []:
        yield action
        name = action.get("action")
        for key in CONTROL_BODIES.get(name, ()):
            yield from iter_actions(action.get(key) or [])
        if name == "flow_switch":
            for body in (action.get("cases") or {}).values():
                yield from iter_actions(body or [])
        if isinstance(action.get("error_handler"), list):
            yield from iter_actions(action["error_handler"])


def _aggregate(results: list[ActionResult], action: str) -> ActionResult:
    failed = next((r for r in results if not r.success), None)
    if failed is not None:
        return ActionResult(
            success=False,
            data=[r.data for r in results],
            error=failed.error,
            action=action,
        )
    return ActionResult.ok([r.data for r in results], action=action)


class FlowEngine:
    """Interprets action lists for commands, events, flows, pipes and jobs."""

    def __init__(
        self,
        services: Services,
        max_depth: int = 50,
        max_loop_iterations: int = 10_000,
        max_parallel: int = 50,
        max_actions: int = 1000,
        stop_on_error: bool = True,
    ) -> None:
        self.services = services
        self.max_depth = max_depth
        self.max_loop_iterations = max_loop_iterations
        self.max_parallel = max_parallel
        self.max_actions = max_actions
        self.stop_on_error = stop_on_error
        self._flows: dict[str, FlowDefinition] = {}
        self._control: dict[str, ControlFn] = {
            "call_flow": self._call_flow_action,
            "return": self._return_action,
            "abort": self._abort_action,
            "flow_if": self._if_action,
            "flow_switch": self._switch_action,
            "flow_while": self._while_action,
            "repeat": self._repeat_action,
            "parallel": self._parallel_action,
            "batch": self._batch_action,
            "try": self._try_action,
        }
        services.engine = self

    # ------------------------------------------------------------------
    # Flow registry
    # ------------------------------------------------------------------

    def register_flow(self, flow: FlowDefinition) -> None:
        if flow.name in self._flows:
            logger.warning("Overwriting flow '%s'", flow.name)
        self._flows = {**self._flows, flow.name: flow}

    def register_flows(self, flows: list[FlowDefinition]) -> None:
        for flow in flows:
            self.register_flow(flow)

    def get_flow(self, name: str) -> FlowDefinition:
        flow = self._flows.get(name)
        if flow is None:
            raise FlowNotFoundError(name)
        return flow

    def has_flow(self, name: str) -> bool:
        return name in self._flows

    @property
    def flows(self) -> list[str]:
        return sorted(self._flows)

    def is_control(self, name: str) -> bool:
        return name in self._control

    # ------------------------------------------------------------------
    # Preflight validation
    # ------------------------------------------------------------------

    def validate_actions(self, actions: list[dict[str, Any]], where: str = "actions") -> list[str]:
        """Collect problems (unknown names, rejected configs) without executing."""
        registry = self.services.registry
        problems: list[str] = []
        for action in iter_actions(actions):
            name = action.get("action")
            if not name:
                problems.append(f"{where}: action without a name: {action!r}")
                continue
            if name in self._control:
                target = action.get("flow")
                if (
                    name == "call_flow"
                    and isinstance(target, str)
                    and "${" not in target
                    and target not in self._flows
                ):
                    problems.append(f"{where}: call_flow references unknown flow '{target}'")
                continue
            if not registry.has(name):
                problems.append(f"{where}: unknown action '{name}'")
                continue
            reason = registry.check(action)
            if reason is not None:
                problems.append(f"{where}: invalid config for '{name}': {reason}")
        return problems

    def preflight(self, sections: dict[str, list[dict[str, Any]]]) -> None:
        """Validate every named action list.

        Raises:
            SpecValidationError: Listing every problem found.
        """
        problems: list[str] = []
        for where, actions in sections.items():
            problems.extend(self.validate_actions(actions, where))
        if problems:
            raise SpecValidationError(
                f"Specification has {len(problems)} invalid action(s)", problems
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, actions: list[dict[str, Any]], ctx: ExecutionContext) -> list[ActionResult]:
        """Run a trigger's action list in its root frame."""
        return await self.execute_sequence(actions, ctx)

    async def execute_sequence(
        self, actions: list[dict[str, Any]], ctx: ExecutionContext
    ) -> list[ActionResult]:
        """Run actions strictly in order until the frame halts or is cancelled.

        With ``stop_on_error`` the first failed action also ends the sequence.
        """
        if len(actions) > self.max_actions:
            error = LoopLimitExceeded(
                f"Too many actions: {len(actions)} exceeds limit of {self.max_actions}"
            )
            return [ActionResult.fail(error, action="sequence")]

        results: list[ActionResult] = []
        for action in actions:
            if ctx.cancelled:
                ctx.frame.abort_trigger(ctx.cancel.reason or "cancelled")
                results.append(
                    ActionResult.fail(
                        FlowAbortedError(ctx.frame.flow_name, ctx.cancel.reason or "cancelled"),
                        action=action.get("action"),
                    )
                )
                break
            if ctx.frame.halted:
                break
            result = await self.execute_action(action, ctx)
            results.append(result)
            if not result.success and self.stop_on_error:
                break
        return results

    async def execute_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        """Execute one action: ``when`` gate, validation, handler, bindings."""
        name = action.get("action", "")
        try:
            if action.get("when") is not None and not await ctx.check(action["when"]):
                return ActionResult.ok(None, action=name)

            control = self._control.get(name)
            if control is not None:
                result = await control(action, ctx)
            else:
                handler = self.services.registry.get(name)
                if handler.validate is not None:
                    verdict = handler.validate(action)
                    if verdict is not True:
                        reason = verdict if isinstance(verdict, str) else "invalid configuration"
                        return ActionResult.fail(ActionValidationError(name, reason), action=name)
                result = await handler.execute(action, ctx)
        except FlowbotError as exc:
            result = ActionResult.fail(exc, action=name)
        except Exception as exc:
            logger.exception("Action '%s' raised an exception", name)
            result = ActionResult.fail(ActionExecutionError(name, str(exc), exc), action=name)

        if result.action is None:
            result.action = name
        if result.success and action.get("as") and name not in _LOOP_BINDINGS:
            ctx[action["as"]] = result.data
        if not result.success and action.get("error_handler"):
            await self._handle_error(action["error_handler"], result, ctx)
        return result

    async def _handle_error(
        self, handler: Any, result: ActionResult, ctx: ExecutionContext
    ) -> None:
        ctx["error"] = result.to_report()
        if isinstance(handler, str):
            await self.call_flow(handler, {"error": ctx["error"]}, ctx)
        else:
            await self.execute_sequence(handler, ctx)

    # ------------------------------------------------------------------
    # Flow calls
    # ------------------------------------------------------------------

    async def call_flow(
        self,
        name: str,
        args: dict[str, Any] | None,
        ctx: ExecutionContext,
        caller_frame: Frame | None = None,
    ) -> FlowResult:
        """Invoke a flow in a new frame one level deeper than its caller.

        Failures (unknown flow, bad arguments, depth limit) are returned in
        the :class:`FlowResult`, never raised.
        """
        parent = caller_frame or ctx.frame
        depth = parent.depth + 1
        if depth > self.max_depth:
            logger.warning(
                "Flow '%s' exceeded max depth %d (stack: %s)",
                name,
                self.max_depth,
                " > ".join(parent.stack()),
            )
            return FlowResult(name, False, error=RecursionLimitExceeded(self.max_depth, name))

        try:
            flow = self.get_flow(name)
            bound = self._bind_parameters(flow.parameters, args or {})
        except FlowbotError as exc:
            return FlowResult(name, False, error=exc)

        frame = Frame(flow_name=name, args=bound, depth=depth, parent=parent)
        child = ctx.child({**bound, "args": bound}, frame=frame)
        results = await self.execute_sequence(flow.actions, child)

        if frame.aborted_trigger:
            error = FlowAbortedError(name, frame.abort_reason)
            return FlowResult(name, False, results=results, error=error, aborted=True)

        value = frame.return_value
        if flow.returns:
            try:
                value = await child.value_of(flow.returns)
            except FlowbotError as exc:
                return FlowResult(name, False, results=results, error=exc)
        return FlowResult(name, True, value=value, results=results)

    @staticmethod
    def _bind_parameters(
        parameters: list[FlowParameter], args: dict[str, Any]
    ) -> dict[str, Any]:
        bound = dict(args)
        for param in parameters:
            if param.name not in bound or bound[param.name] is None:
                if param.required:
                    raise FlowParameterError(f"Missing required parameter '{param.name}'")
                bound[param.name] = param.default
                continue
            check = _PARAM_TYPES.get(param.type, _PARAM_TYPES["any"])
            if not check(bound[param.name]):
                raise FlowParameterError(
                    f"Parameter '{param.name}' expects {param.type}, "
                    f"got {type(bound[param.name]).__name__}",
                    {"parameter": param.name, "expected": param.type},
                )
        return bound

    # ------------------------------------------------------------------
    # Control-flow instructions
    # ------------------------------------------------------------------

    async def _call_flow_action(
        self, action: dict[str, Any], ctx: ExecutionContext
    ) -> ActionResult:
        name = await ctx.interpolate(action.get("flow", ""))
        args = await ctx.resolve(action.get("args") or {})
        flow_result = await self.call_flow(name, args, ctx)
        return ActionResult(
            success=flow_result.success,
            data=flow_result.value,
            error=flow_result.error,
            action="call_flow",
            flow_result=flow_result,
        )

    async def _return_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        value = await ctx.resolve(action.get("value"))
        ctx.frame.set_return(value)
        return ActionResult.ok(value, action="return")

    async def _abort_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        reason = await ctx.interpolate(action["reason"]) if action.get("reason") else None
        ctx.frame.abort_trigger(reason)
        logger.debug("Invocation aborted in '%s': %s", ctx.frame.flow_name, reason)
        return ActionResult.fail(FlowAbortedError(ctx.frame.flow_name, reason), action="abort")

    async def _if_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        condition = action.get("if", action.get("condition"))
        branch = "then" if await ctx.check(condition) else "else"
        results = await self.execute_sequence(action.get(branch) or [], ctx)
        return _aggregate(results, "flow_if")

    async def _switch_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        value = stringify(await ctx.value_of(action.get("value")))
        cases = {stringify(key): body for key, body in (action.get("cases") or {}).items()}
        body = cases.get(value, action.get("default") or [])
        return _aggregate(await self.execute_sequence(body, ctx), "flow_switch")

    async def _while_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        body = action.get("do") or []
        limit = min(
            int(action.get("max_iterations", self.max_loop_iterations)),
            self.max_loop_iterations,
        )
        iterations = 0
        while await ctx.check(action.get("while")):
            if iterations >= limit:
                return ActionResult.fail(
                    LoopLimitExceeded(f"flow_while exceeded {limit} iterations"),
                    action="flow_while",
                )
            iterations += 1
            await self.execute_sequence(body, ctx)
            if ctx.frame.halted or ctx.cancelled:
                break
        return ActionResult.ok({"iterations": iterations}, action="flow_while")

    async def _repeat_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        times = int(await ctx.value_of(action.get("times", 0)) or 0)
        if times > self.max_loop_iterations:
            return ActionResult.fail(
                LoopLimitExceeded(f"repeat count {times} exceeds {self.max_loop_iterations}"),
                action="repeat",
            )
        variable = action.get("as", "index")
        body = action.get("do") or []
        completed = 0
        for index in range(times):
            ctx[variable] = index
            await self.execute_sequence(body, ctx)
            completed += 1
            if ctx.frame.halted or ctx.cancelled:
                break
        return ActionResult.ok({"iterations": completed}, action="repeat")

    async def _parallel_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        actions = action.get("actions") or []
        if len(actions) > self.max_parallel:
            return ActionResult.fail(
                LoopLimitExceeded(
                    f"Too many parallel actions: {len(actions)} exceeds {self.max_parallel}"
                ),
                action="parallel",
            )
        results = await asyncio.gather(*(self.execute_action(a, ctx) for a in actions))
        return _aggregate(list(results), "parallel")

    async def _batch_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        items = await ctx.value_of(action.get("items", []))
        items = list(items or [])
        if len(items) > self.max_loop_iterations:
            return ActionResult.fail(
                LoopLimitExceeded(f"batch of {len(items)} exceeds {self.max_loop_iterations}"),
                action="batch",
            )
        variable = action.get("as", "item")
        concurrency = max(1, min(int(action.get("concurrency", 1)), self.max_parallel))
        body = action.get("each") or []
        outcomes: list[list[ActionResult]] = []
        for start in range(0, len(items), concurrency):
            if ctx.cancelled or ctx.frame.halted:
                break
            chunk = items[start : start + concurrency]
            runs = [
                self.execute_sequence(
                    body, ctx.child({variable: item, f"{variable}_index": start + offset})
                )
                for offset, item in enumerate(chunk)
            ]
            outcomes.extend(await asyncio.gather(*runs))
        failed = sum(1 for run in outcomes if any(not r.success for r in run))
        return ActionResult.ok({"processed": len(outcomes), "failed": failed}, action="batch")

    async def _try_action(self, action: dict[str, Any], ctx: ExecutionContext) -> ActionResult:
        results = await self.execute_sequence(action.get("try") or [], ctx)
        outcome = _aggregate(results, "try")
        try:
            if not outcome.success and action.get("catch"):
                ctx["error"] = ActionResult(False, error=outcome.error, action="try").to_report()
                caught = await self.execute_sequence(action["catch"], ctx)
                outcome = _aggregate(caught, "try")
        finally:
            if action.get("finally"):
                await self.execute_sequence(action["finally"], ctx)
        return outcome
