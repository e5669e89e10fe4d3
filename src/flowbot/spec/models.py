"""Pydantic models for bot specifications.

Action lists stay plain dicts (``{"action": name, ...}``) after loader
normalization; the registry and flow engine own their interpretation.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flowbot.utils.duration import parse_duration

ActionList = list[dict[str, Any]]

PipeKind = Literal["http", "websocket", "mqtt", "tcp", "udp", "webhook", "database", "file"]


class CooldownConfig(BaseModel):
    """Fixed-window command cooldown: ``rate`` runs per ``duration`` per key."""

    rate: int = Field(default=1, ge=1)
    per: Literal["user", "channel", "guild", "global"] = "user"
    duration: str | float = "0s"
    message: str | None = None
    actions: ActionList = Field(default_factory=list)

    @property
    def seconds(self) -> float:
        return parse_duration(self.duration)


class TimingConfig(BaseModel):
    """Debounce/throttle window and the context fields that form its key."""

    duration: str | float
    key: list[str] = Field(default_factory=lambda: ["guild_id", "channel_id", "user_id"])

    @property
    def seconds(self) -> float:
        return parse_duration(self.duration)


def _timing(value: Any) -> Any:
    if isinstance(value, str | int | float) and not isinstance(value, bool):
        return {"duration": value}
    return value


class CommandOption(BaseModel):
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    choices: list[Any] | None = None


class SubcommandDefinition(BaseModel):
    name: str
    description: str = ""
    options: list[CommandOption] = Field(default_factory=list)
    actions: ActionList = Field(default_factory=list)


class CommandDefinition(BaseModel):
    name: str
    description: str = ""
    options: list[CommandOption] = Field(default_factory=list)
    actions: ActionList = Field(default_factory=list)
    subcommands: list[SubcommandDefinition] = Field(default_factory=list)
    cooldown: CooldownConfig | None = None
    when: Any = None


class EventHandlerDefinition(BaseModel):
    """Actions run for a platform or custom event."""

    event: str
    when: Any = None
    actions: ActionList = Field(default_factory=list)
    once: bool = False
    debounce: TimingConfig | None = None
    throttle: TimingConfig | None = None

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "condition" in data and "when" not in data:
                data["when"] = data.pop("condition")
            for key in ("debounce", "throttle"):
                if key in data:
                    data[key] = _timing(data[key])
        return data


class FlowParameter(BaseModel):
    name: str
    type: Literal["string", "number", "integer", "boolean", "array", "object", "any"] = "any"
    required: bool = False
    default: Any = None
    description: str = ""


class FlowDefinition(BaseModel):
    """A named, callable action sequence."""

    name: str
    description: str = ""
    parameters: list[FlowParameter] = Field(default_factory=list)
    actions: ActionList = Field(default_factory=list)
    returns: str | None = None


class PipeHandler(BaseModel):
    """Actions run when a pipe emits a matching inbound event."""

    event: str = "message"
    when: Any = None
    actions: ActionList = Field(default_factory=list)


class PipeDefinition(BaseModel):
    """An external connector; connector-specific keys are kept as extras."""

    model_config = ConfigDict(extra="allow")

    name: str
    type: PipeKind
    handlers: list[PipeHandler] = Field(default_factory=list)
    auto_connect: bool = True

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class CronJob(BaseModel):
    name: str
    cron: str
    timezone: str | None = None
    enabled: bool = True
    actions: ActionList = Field(default_factory=list)


class StateVariable(BaseModel):
    name: str
    scope: Literal["global", "guild", "channel", "user", "member"] = "global"
    default: Any = None
    ttl: str | float | None = None

    @property
    def ttl_seconds(self) -> float | None:
        return None if self.ttl is None else parse_duration(self.ttl)


class Specification(BaseModel):
    """A loaded bot specification. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    name: str = "flowbot"
    version: str = "1.0.0"
    state: list[StateVariable] = Field(default_factory=list)
    commands: list[CommandDefinition] = Field(default_factory=list)
    events: list[EventHandlerDefinition] = Field(default_factory=list)
    flows: list[FlowDefinition] = Field(default_factory=list)
    pipes: list[PipeDefinition] = Field(default_factory=list)
    jobs: list[CronJob] = Field(default_factory=list)

    @field_validator("commands", "flows", "pipes", "jobs", "state")
    @classmethod
    def _unique_names(cls, items: list[Any]) -> list[Any]:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for item in items:
            if item.name in seen:
                duplicates.add(item.name)
            seen.add(item.name)
        if duplicates:
            raise ValueError(f"duplicate names: {', '.join(sorted(duplicates))}")
        return items

    def command(self, name: str) -> CommandDefinition | None:
        return next((c for c in self.commands if c.name == name), None)

    def flow(self, name: str) -> FlowDefinition | None:
        return next((f for f in self.flows if f.name == name), None)

    def variable(self, name: str) -> StateVariable | None:
        return next((v for v in self.state if v.name == name), None)
