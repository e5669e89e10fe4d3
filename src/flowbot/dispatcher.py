"""Trigger dispatcher — routes commands, events, pipe messages and jobs to actions.

Every trigger gets a fresh :class:`ExecutionContext`. Handlers matching the
same event run one after another in registration order; each runs under
its own error boundary, so one handler failing never stops the next.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from flowbot.actions.models import ActionResult
from flowbot.errors import (
    ActionExecutionError,
    FlowbotError,
    FlowParameterError,
    RateLimitExceeded,
    ResolutionError,
)
from flowbot.flows.engine import FlowEngine
from flowbot.flows.models import ExecutionContext, FlowResult, Frame
from flowbot.flows.timing import CooldownTracker, Debouncer, Throttler, cooldown_key, fingerprint
from flowbot.spec.models import (
    CommandDefinition,
    CooldownConfig,
    CronJob,
    EventHandlerDefinition,
    PipeHandler,
    Specification,
)

if TYPE_CHECKING:
    from flowbot.pipes.base import Pipe

logger = logging.getLogger(__name__)

# Platform event names mapped to the names handlers are declared with
EVENT_ALIASES: dict[str, str] = {
    "message_create": "message",
    "guild_member_add": "member_join",
    "guild_member_remove": "member_leave",
    "guild_member_update": "member_update",
    "message_reaction_add": "reaction_add",
    "message_reaction_remove": "reaction_remove",
    "interaction_create": "interaction",
    "client_ready": "ready",
}

# Payload objects whose ``id`` is lifted to ``<name>_id``
_ID_SOURCES = ("user", "member", "guild", "channel", "message", "role")

DEFAULT_COOLDOWN_MESSAGE = "This command is on cooldown. Try again in ${cooldown.remaining}s."


def normalize_event(name: str) -> str:
    key = name.strip().lower().replace("-", "_")
    return EVENT_ALIASES.get(key, key)


def build_trigger_context(event: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Flatten a trigger payload into context variables.

    ``user_id`` / ``guild_id`` / ``channel_id`` (and friends) are derived
    from the payload objects unless given explicitly.
    """
    variables: dict[str, Any] = {"event": event, **(payload or {})}
    member = variables.get("member")
    if "user" not in variables and isinstance(member, Mapping):
        if isinstance(member.get("user"), Mapping):
            variables["user"] = member["user"]
    for source in _ID_SOURCES:
        value = variables.get(source)
        if f"{source}_id" not in variables and isinstance(value, Mapping) and "id" in value:
            variables[f"{source}_id"] = value["id"]
    return variables


@dataclass
class HandlerOutcome:
    """What happened to one matching handler for one trigger."""

    handler: str
    results: list[ActionResult] = field(default_factory=list)
    error: FlowbotError | None = None
    skipped: bool = False
    deferred: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and all(result.success for result in self.results)


@dataclass
class _Registration:
    id: str
    definition: EventHandlerDefinition
    active: bool = True


class Dispatcher:
    """Accepts triggers and hands them to the flow engine.

    Args:
        engine: The flow engine; its services gain a reference to this dispatcher.
        error_message: When set, a failed command replies with this text
            instead of leaving the user without an answer.
    """

    def __init__(
        self,
        engine: FlowEngine,
        *,
        cooldowns: CooldownTracker | None = None,
        throttler: Throttler | None = None,
        debouncer: Debouncer | None = None,
        error_message: str | None = None,
    ) -> None:
        self.engine = engine
        self.services = engine.services
        self.services.dispatcher = self
        self.cooldowns = cooldowns or CooldownTracker()
        self.throttler = throttler or Throttler()
        self.debouncer = debouncer or Debouncer()
        self.error_message = error_message
        self._commands: dict[str, CommandDefinition] = {}
        self._handlers: dict[str, list[_Registration]] = {}
        self._pipe_handlers: dict[str, list[PipeHandler]] = {}
        self._jobs: dict[str, CronJob] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def load(self, spec: Specification) -> None:
        self.engine.register_flows(spec.flows)
        for command in spec.commands:
            self.register_command(command)
        for handler in spec.events:
            self.register_handler(handler)
        for pipe in spec.pipes:
            self._pipe_handlers[pipe.name] = list(pipe.handlers)
        for job in spec.jobs:
            self._jobs[job.name] = job
        logger.info(
            "Dispatcher loaded %d command(s), %d event handler(s), %d job(s)",
            len(self._commands),
            len(spec.events),
            len(self._jobs),
        )

    def register_command(self, command: CommandDefinition) -> None:
        if command.name in self._commands:
            logger.warning("Overwriting command '%s'", command.name)
        self._commands = {**self._commands, command.name: command}

    def register_handler(self, definition: EventHandlerDefinition) -> str:
        event = normalize_event(definition.event)
        registration = _Registration(f"{event}#{next(self._ids)}", definition)
        self._handlers = {
            **self._handlers,
            event: [*self._handlers.get(event, []), registration],
        }
        return registration.id

    def unregister_handler(self, handler_id: str) -> bool:
        for event, registrations in self._handlers.items():
            remaining = [r for r in registrations if r.id != handler_id]
            if len(remaining) != len(registrations):
                self._handlers = {**self._handlers, event: remaining}
                return True
        return False

    def handlers_for(self, event: str) -> list[_Registration]:
        return [r for r in self._handlers.get(normalize_event(event), []) if r.active]

    @property
    def commands(self) -> list[str]:
        return list(self._commands)

    @property
    def jobs(self) -> list[CronJob]:
        return list(self._jobs.values())

    async def _context(self, variables: Mapping[str, Any], trigger: str) -> ExecutionContext:
        ctx = ExecutionContext(variables, services=self.services, trigger=trigger)
        if self.services.state is not None:
            ctx.state.update(await self.services.state.load(ctx.variables))
        return ctx

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def invoke_command(
        self,
        name: str,
        options: Mapping[str, Any] | None = None,
        trigger_context: Mapping[str, Any] | None = None,
        subcommand: str | None = None,
    ) -> list[ActionResult]:
        """Run a command and return the results of its top-level actions.

        Failures never propagate; they come back as failed results.
        """
        command = self._commands.get(name)
        if command is None:
            return [ActionResult.fail(ResolutionError(f"Unknown command '{name}'"), action=name)]

        try:
            actions, resolved = self._command_actions(command, subcommand, options or {})
            variables = build_trigger_context(
                "command",
                {**(trigger_context or {}), "command": name, "options": resolved},
            )
            if subcommand:
                variables["subcommand"] = subcommand
            ctx = await self._context(variables, trigger=f"command:{name}")

            if command.when is not None and not await ctx.check(command.when):
                logger.debug("Command %s gated off", name)
                return []
            cooldown = command.cooldown
            if cooldown is not None and cooldown.seconds > 0:
                cooled = await self._apply_cooldown(command.name, cooldown, ctx)
                if cooled is not None:
                    return cooled
            results = await self.engine.run(actions, ctx)
        except FlowbotError as exc:
            logger.warning("Command %s failed: %s", name, exc.message)
            results = [ActionResult.fail(exc, action=name)]
        except Exception as exc:
            logger.exception("Command %s raised an exception", name)
            results = [ActionResult.fail(ActionExecutionError(name, str(exc), exc), action=name)]

        if self.error_message and any(not result.success for result in results):
            await self._report_failure(name, trigger_context or {})
        return results

    def _command_actions(
        self,
        command: CommandDefinition,
        subcommand: str | None,
        options: Mapping[str, Any],
    ) -> tuple[list[dict[str, Any]], dict[str, Any]]:
        definitions = command.options
        actions = command.actions
        if subcommand:
            sub = next((s for s in command.subcommands if s.name == subcommand), None)
            if sub is None:
                raise ResolutionError(f"Unknown subcommand '{command.name} {subcommand}'")
            definitions, actions = sub.options, sub.actions

        resolved = {opt.name: opt.default for opt in definitions if opt.default is not None}
        resolved.update(options)
        missing = [opt.name for opt in definitions if opt.required and opt.name not in resolved]
        if missing:
            raise FlowParameterError(
                f"Missing required option(s) for '{command.name}': {', '.join(missing)}"
            )
        return actions, resolved

    async def _apply_cooldown(
        self, command: str, cooldown: CooldownConfig, ctx: ExecutionContext
    ) -> list[ActionResult] | None:
        key = cooldown_key(command, cooldown.per, ctx)
        remaining = self.cooldowns.hit(key, cooldown.rate, cooldown.seconds)
        if remaining is None:
            return None

        logger.debug("Command %s on cooldown for %s (%.1fs left)", command, key, remaining)
        ctx["cooldown"] = {"remaining": round(remaining, 1), "duration": cooldown.seconds}
        if cooldown.actions:
            return await self.engine.run(cooldown.actions, ctx)
        if self.services.platform is None:
            error = RateLimitExceeded(f"'{command}' is on cooldown", retry_after=remaining)
            return [ActionResult.fail(error, action=command)]
        reply = {
            "action": "reply",
            "content": cooldown.message or DEFAULT_COOLDOWN_MESSAGE,
            "ephemeral": True,
        }
        return [await self.engine.execute_action(reply, ctx)]

    async def _report_failure(self, name: str, trigger_context: Mapping[str, Any]) -> None:
        platform = self.services.platform
        if platform is None:
            return
        payload = {"content": self.error_message, "ephemeral": True, "command": name}
        channel = trigger_context.get("channel_id")
        if channel is not None:
            payload["channel"] = channel
        try:
            await platform.perform("reply", payload)
        except Exception:
            logger.exception("Could not report failure of command %s", name)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def dispatch_event(self, name: str, payload: Mapping[str, Any] | None = None) -> asyncio.Task:
        """Fire-and-forget dispatch; use :meth:`drain` to wait for completion."""
        task = asyncio.create_task(self.emit(name, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def emit(
        self, name: str, payload: Mapping[str, Any] | None = None
    ) -> list[HandlerOutcome]:
        """Dispatch an event and wait for every matching handler."""
        event = normalize_event(name)
        variables = build_trigger_context(event, payload)
        outcomes: list[HandlerOutcome] = []
        for registration in self.handlers_for(event):
            outcome = await self._run_handler(registration, event, variables)
            if outcome is not None:
                outcomes.append(outcome)
        if not outcomes:
            logger.debug("No handlers ran for event %s", event)
        return outcomes

    async def _run_handler(
        self,
        registration: _Registration,
        event: str,
        variables: Mapping[str, Any],
    ) -> HandlerOutcome | None:
        definition = registration.definition
        handler_id = registration.id
        try:
            ctx = await self._context(variables, trigger=f"event:{event}")
            if definition.when is not None and not await ctx.check(definition.when):
                return HandlerOutcome(handler_id, skipped=True)
            if definition.once:
                if not registration.active:
                    return None
                registration.active = False

            if definition.throttle is not None:
                key = fingerprint(handler_id, definition.throttle.key, ctx)
                if not self.throttler.allow(key, definition.throttle.seconds):
                    logger.debug("Handler %s throttled for %s", handler_id, key)
                    return HandlerOutcome(handler_id, skipped=True)
            if definition.debounce is not None:
                key = fingerprint(handler_id, definition.debounce.key, ctx)
                self.debouncer.submit(
                    key,
                    definition.debounce.seconds,
                    partial(self._run_debounced, registration, event),
                    dict(variables),
                )
                return HandlerOutcome(handler_id, deferred=True)

            results = await self.engine.run(definition.actions, ctx)
            return HandlerOutcome(handler_id, results)
        except FlowbotError as exc:
            logger.warning("Handler %s failed: %s", handler_id, exc.message)
            return HandlerOutcome(handler_id, error=exc)
        except Exception as exc:
            logger.exception("Handler %s raised an exception", handler_id)
            return HandlerOutcome(handler_id, error=ActionExecutionError(event, str(exc), exc))

    async def _run_debounced(
        self, registration: _Registration, event: str, variables: dict[str, Any]
    ) -> list[ActionResult]:
        ctx = await self._context(variables, trigger=f"event:{event}")
        return await self.engine.run(registration.definition.actions, ctx)

    # ------------------------------------------------------------------
    # Pipes, jobs and flows
    # ------------------------------------------------------------------

    async def dispatch_pipe_message(
        self, pipe: Pipe, event: str, data: Any
    ) -> list[HandlerOutcome]:
        """Run the handlers a pipe declares for an inbound event."""
        variables = {"event": event, "pipe": pipe.name, "data": data}
        if isinstance(data, Mapping):
            variables["message"] = data
        outcomes: list[HandlerOutcome] = []
        for index, handler in enumerate(self._pipe_handlers.get(pipe.name, [])):
            if not pipe.matches(handler.event, event):
                continue
            handler_id = f"{pipe.name}:{handler.event}#{index + 1}"
            try:
                ctx = await self._context(variables, trigger=f"pipe:{pipe.name}")
                if handler.when is not None and not await ctx.check(handler.when):
                    outcomes.append(HandlerOutcome(handler_id, skipped=True))
                    continue
                results = await self.engine.run(handler.actions, ctx)
                outcomes.append(HandlerOutcome(handler_id, results))
            except FlowbotError as exc:
                logger.warning("Pipe handler %s failed: %s", handler_id, exc.message)
                outcomes.append(HandlerOutcome(handler_id, error=exc))
            except Exception as exc:
                logger.exception("Pipe handler %s raised an exception", handler_id)
                error = ActionExecutionError(handler_id, str(exc), exc)
                outcomes.append(HandlerOutcome(handler_id, error=error))
        return outcomes

    async def fire_job(self, name: str) -> list[ActionResult]:
        job = self._jobs.get(name)
        if job is None:
            return [ActionResult.fail(ResolutionError(f"Unknown job '{name}'"), action=name)]
        try:
            variables = {"event": "job", "job": {"name": job.name, "cron": job.cron}}
            ctx = await self._context(variables, trigger=f"job:{name}")
            results = await self.engine.run(job.actions, ctx)
        except FlowbotError as exc:
            logger.warning("Job %s failed: %s", name, exc.message)
            return [ActionResult.fail(exc, action=name)]
        except Exception as exc:
            logger.exception("Job %s raised an exception", name)
            return [ActionResult.fail(ActionExecutionError(name, str(exc), exc), action=name)]
        failed = sum(1 for result in results if not result.success)
        if failed:
            logger.warning("Job %s finished with %d failed action(s)", name, failed)
        return results

    async def call_flow(
        self,
        name: str,
        args: Mapping[str, Any] | None = None,
        caller_frame: Frame | None = None,
    ) -> FlowResult:
        ctx = await self._context({}, trigger=f"flow:{name}")
        return await self.engine.call_flow(name, dict(args or {}), ctx, caller_frame)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for in-flight event tasks and debounced handlers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.debouncer.drain()

    def cancel_pending(self) -> None:
        self.debouncer.cancel_all()
        for task in list(self._tasks):
            task.cancel()
