"""Shared fixtures for flowbot tests."""

from __future__ import annotations

import logging

import pytest

from flowbot.actions.builtin import get_builtin_actions
from flowbot.actions.registry import ActionRegistry
from flowbot.expression.conditions import ConditionEvaluator
from flowbot.expression.evaluator import ExpressionEvaluator
from flowbot.flows.engine import FlowEngine
from flowbot.flows.models import ExecutionContext, Services
from flowbot.platform import RecordingPlatform
from flowbot.spec.models import StateVariable
from flowbot.state.manager import StateManager


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for ``asyncio.sleep``; records delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_engine(
    platform: RecordingPlatform | None = None,
    *,
    max_depth: int = 50,
    strict: bool = False,
    variables: list[StateVariable] | None = None,
    pipes=None,
    stop_on_error: bool = True,
) -> FlowEngine:
    """Flow engine with the built-in actions and in-memory state."""
    evaluator = ExpressionEvaluator(strict=strict)
    registry = ActionRegistry()
    registry.register_all(get_builtin_actions())
    services = Services(
        evaluator=evaluator,
        conditions=ConditionEvaluator(evaluator),
        registry=registry,
        state=StateManager(variables=variables),
        pipes=pipes,
        platform=platform if platform is not None else RecordingPlatform(),
    )
    return FlowEngine(services, max_depth=max_depth, stop_on_error=stop_on_error)


def make_context(engine: FlowEngine, **variables) -> ExecutionContext:
    return ExecutionContext(variables, services=engine.services, trigger="test")


@pytest.fixture()
def platform() -> RecordingPlatform:
    return RecordingPlatform()


@pytest.fixture()
def engine(platform: RecordingPlatform) -> FlowEngine:
    return make_engine(platform)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def restore_root_logging():
    """Undo ``configure_logging`` so later tests keep pytest's log capture."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
