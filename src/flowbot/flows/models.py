"""Flow execution data models — frames, results, contexts and cancellation."""

from __future__ import annotations

import asyncio
from collections import ChainMap
from collections.abc import Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from flowbot.actions.models import ActionResult
from flowbot.errors import FlowbotError

if TYPE_CHECKING:
    from flowbot.actions.registry import ActionRegistry
    from flowbot.dispatcher import Dispatcher
    from flowbot.expression.conditions import ConditionEvaluator
    from flowbot.expression.evaluator import ExpressionEvaluator
    from flowbot.flows.engine import FlowEngine
    from flowbot.pipes.manager import PipeManager
    from flowbot.platform import PlatformGateway
    from flowbot.state.manager import StateManager


class CancelToken:
    """Cooperative cancellation signal, checked between actions."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class Frame:
    """One flow activation on the call stack.

    ``aborted_flow`` unwinds only this frame (set by ``return``);
    ``aborted_trigger`` cancels the whole invocation and is propagated to
    every ancestor frame.
    """

    flow_name: str
    args: dict[str, Any] = field(default_factory=dict)
    depth: int = 0
    parent: Frame | None = None
    return_value: Any = None
    aborted_flow: bool = False
    aborted_trigger: bool = False
    abort_reason: str | None = None

    def set_return(self, value: Any) -> None:
        self.return_value = value
        self.aborted_flow = True

    def abort_trigger(self, reason: str | None = None) -> None:
        frame: Frame | None = self
        while frame is not None:
            frame.aborted_trigger = True
            frame.abort_reason = reason
            frame = frame.parent

    @property
    def halted(self) -> bool:
        return self.aborted_flow or self.aborted_trigger

    def stack(self) -> list[str]:
        """Flow names from the root frame down to this one."""
        names: list[str] = []
        frame: Frame | None = self
        while frame is not None:
            names.append(frame.flow_name)
            frame = frame.parent
        return list(reversed(names))


@dataclass
class FlowResult:
    """Outcome of one flow invocation."""

    flow_name: str
    success: bool
    value: Any = None
    results: list[ActionResult] = field(default_factory=list)
    error: FlowbotError | None = None
    aborted: bool = False


@dataclass
class Services:
    """Live collaborators reachable from every execution context."""

    evaluator: ExpressionEvaluator
    conditions: ConditionEvaluator
    registry: ActionRegistry
    engine: FlowEngine | None = None
    state: StateManager | None = None
    pipes: PipeManager | None = None
    platform: PlatformGateway | None = None
    dispatcher: Dispatcher | None = None


class ExecutionContext(MutableMapping[str, Any]):
    """Per-invocation variable scope chain.

    Writes land in the innermost scope. Nested flows get a child scope, so they
    read everything their caller can see while their own locals vanish on
    return. The ``state`` mapping is shared by the whole chain.
    """

    def __init__(
        self,
        variables: Mapping[str, Any] | None = None,
        *,
        services: Services,
        frame: Frame | None = None,
        cancel: CancelToken | None = None,
        trigger: str | None = None,
        _chain: ChainMap | None = None,
    ) -> None:
        self.variables: ChainMap = (
            _chain if _chain is not None else ChainMap(dict(variables or {}))
        )
        self.variables.maps[-1].setdefault("state", {})
        self.services = services
        self.frame = frame or Frame(flow_name=trigger or "root")
        self.cancel = cancel or CancelToken()
        self.trigger = trigger

    def child(
        self,
        variables: Mapping[str, Any] | None = None,
        frame: Frame | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            services=self.services,
            frame=frame or self.frame,
            cancel=self.cancel,
            trigger=self.trigger,
            _chain=self.variables.new_child(dict(variables or {})),
        )

    # MutableMapping interface
    def __getitem__(self, key: str) -> Any:
        return self.variables[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def __delitem__(self, key: str) -> None:
        self.variables.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self.variables)

    def __len__(self) -> int:
        return len(self.variables)

    def __contains__(self, key: object) -> bool:
        return key in self.variables

    @property
    def state(self) -> dict[str, Any]:
        return self.variables["state"]

    @property
    def cancelled(self) -> bool:
        return self.cancel.cancelled

    # Expression helpers
    async def evaluate(self, expression: str) -> Any:
        return await self.services.evaluator.evaluate(expression, self.variables)

    async def interpolate(self, template: Any) -> str:
        if not isinstance(template, str):
            return "" if template is None else str(template)
        return await self.services.evaluator.interpolate(template, self.variables)

    async def resolve(self, value: Any) -> Any:
        """Resolve ``${...}`` templates anywhere inside *value*."""
        return await self.services.evaluator.resolve(value, self.variables)

    async def value_of(self, value: Any) -> Any:
        """Evaluate a string as an expression; pass other values through."""
        if isinstance(value, str):
            return await self.evaluate(value)
        return await self.resolve(value)

    async def check(self, condition: Any, *, lenient: bool = False) -> bool:
        return await self.services.conditions.evaluate(condition, self.variables, lenient=lenient)

    def snapshot(self) -> dict[str, Any]:
        """Flattened copy of every visible variable."""
        return dict(self.variables)
