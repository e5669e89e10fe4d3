"""Bot specification models and the YAML loader."""

from flowbot.spec.loader import load_spec, load_spec_from_string, parse_spec
from flowbot.spec.models import (
    CommandDefinition,
    CronJob,
    EventHandlerDefinition,
    FlowDefinition,
    PipeDefinition,
    Specification,
    StateVariable,
)

__all__ = [
    "CommandDefinition",
    "CronJob",
    "EventHandlerDefinition",
    "FlowDefinition",
    "PipeDefinition",
    "Specification",
    "StateVariable",
    "load_spec",
    "load_spec_from_string",
    "parse_spec",
]
