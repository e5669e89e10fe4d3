"""Central runtime — wires config and a spec to live components."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI

from flowbot.actions.builtin import get_builtin_actions
from flowbot.actions.models import ActionHandler
from flowbot.actions.registry import ActionRegistry
from flowbot.config import ConfigManager
from flowbot.config.schema import FlowbotConfig
from flowbot.dispatcher import Dispatcher
from flowbot.expression.conditions import ConditionEvaluator
from flowbot.expression.evaluator import ExpressionEvaluator
from flowbot.flows.engine import FlowEngine
from flowbot.flows.models import Services
from flowbot.pipes.manager import PipeManager
from flowbot.pipes.webhook import build_webhook_router
from flowbot.platform import PlatformGateway, RecordingPlatform
from flowbot.scheduler import JobScheduler
from flowbot.spec.models import Specification
from flowbot.state.manager import StateManager
from flowbot.state.storage import create_storage

logger = logging.getLogger(__name__)


def action_sections(spec: Specification) -> dict[str, list[dict[str, Any]]]:
    """Every action list in *spec*, keyed by where it lives."""
    sections: dict[str, list[dict[str, Any]]] = {}
    for command in spec.commands:
        sections[f"commands.{command.name}"] = command.actions
        for sub in command.subcommands:
            sections[f"commands.{command.name}.{sub.name}"] = sub.actions
        if command.cooldown is not None and command.cooldown.actions:
            sections[f"commands.{command.name}.cooldown"] = command.cooldown.actions
    for index, handler in enumerate(spec.events):
        sections[f"events[{index}].{handler.event}"] = handler.actions
    for flow in spec.flows:
        sections[f"flows.{flow.name}"] = flow.actions
    for job in spec.jobs:
        sections[f"jobs.{job.name}"] = job.actions
    for pipe in spec.pipes:
        for index, handler in enumerate(pipe.handlers):
            sections[f"pipes.{pipe.name}.handlers[{index}]"] = handler.actions
    return sections


class FlowbotRuntime:
    """Builds and holds every live component for one specification.

    Construction wires everything and validates all action lists up front
    (unknown actions or rejected configs raise ``SpecValidationError``);
    :meth:`start` then connects pipes and starts the scheduler.
    """

    def __init__(
        self,
        spec: Specification,
        config: FlowbotConfig | None = None,
        platform: PlatformGateway | None = None,
        extra_actions: list[ActionHandler] | None = None,
    ) -> None:
        self._config = config or ConfigManager().load()
        self.spec = spec
        self.platform = platform or RecordingPlatform()
        self._started = False
        runtime = self._config.runtime

        self.evaluator = ExpressionEvaluator(
            timeout_ms=runtime.expression_timeout_ms,
            strict=runtime.strict_variables,
            allow_override=runtime.allow_override,
        )
        self.registry = ActionRegistry(allow_override=runtime.allow_override)
        self.registry.register_all(get_builtin_actions())
        self.registry.register_all(extra_actions or [])

        storage = create_storage(
            self._config.storage.backend, str(self._config.get_storage_path())
        )
        self.state = StateManager(storage, list(spec.state))
        self.pipes = PipeManager()
        self.services = Services(
            evaluator=self.evaluator,
            conditions=ConditionEvaluator(self.evaluator),
            registry=self.registry,
            state=self.state,
            pipes=self.pipes,
            platform=self.platform,
        )
        self.engine = FlowEngine(
            self.services,
            max_depth=runtime.max_flow_depth,
            max_loop_iterations=runtime.max_loop_iterations,
            max_parallel=runtime.max_parallel,
            max_actions=runtime.max_actions,
            stop_on_error=runtime.stop_on_error,
        )
        self.dispatcher = Dispatcher(self.engine, error_message=runtime.error_message or None)
        self.dispatcher.load(spec)
        self.engine.preflight(action_sections(spec))

        self.pipes.set_sink(self.dispatcher.dispatch_pipe_message)
        self.pipes.load(list(spec.pipes))
        self.scheduler = JobScheduler(self.dispatcher, self._config.scheduler.timezone or None)
        logger.info(
            "Loaded spec %s v%s: %d command(s), %d flow(s), %d pipe(s)",
            spec.name,
            spec.version,
            len(spec.commands),
            len(spec.flows),
            len(spec.pipes),
        )

    @property
    def config(self) -> FlowbotConfig:
        return self._config

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Connect auto-connect pipes and start scheduled jobs."""
        if self._started:
            logger.warning("Runtime already started")
            return
        logger.info("flowbot runtime starting...")
        connected = await self.pipes.connect_all()
        failed = [name for name, ok in connected.items() if not ok]
        if failed:
            logger.warning("Pipes not connected: %s", ", ".join(failed))
        if self._config.scheduler.enabled and self.spec.jobs:
            self.scheduler.load(list(self.spec.jobs))
            self.scheduler.start()
        self._started = True
        logger.info("flowbot runtime started")

    async def stop(self) -> None:
        """Stop jobs, wait for in-flight triggers, close pipes and storage."""
        if not self._started:
            return
        logger.info("flowbot runtime stopping...")
        self.scheduler.shutdown()
        await self.dispatcher.drain()
        await self.pipes.disconnect_all()
        await self.state.close()
        self.evaluator.close()
        self._started = False
        logger.info("flowbot runtime stopped")

    def create_app(self) -> FastAPI:
        """FastAPI app serving every webhook pipe under ``webhooks.prefix``."""
        app = FastAPI(title=f"flowbot: {self.spec.name}", version=self.spec.version)
        app.include_router(build_webhook_router(self.pipes.webhooks, self._config.webhooks.prefix))
        return app
