"""Action data models — the handler contract and the per-action result."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from flowbot.errors import ActionExecutionError, FlowbotError

if TYPE_CHECKING:
    from flowbot.flows.models import ExecutionContext, FlowResult

# Keys consumed by the executor rather than by the handler
RESERVED_KEYS = frozenset({"action", "when", "as", "error_handler", "description", "id"})


@dataclass
class ActionResult:
    """Result of executing one action."""

    success: bool
    data: Any = None
    error: FlowbotError | None = None
    action: str | None = None
    flow_result: FlowResult | None = None

    @classmethod
    def ok(cls, data: Any = None, action: str | None = None) -> ActionResult:
        return cls(success=True, data=data, action=action)

    @classmethod
    def fail(cls, error: Exception | str, action: str | None = None) -> ActionResult:
        if isinstance(error, str):
            error = ActionExecutionError(action or "unknown", error)
        elif not isinstance(error, FlowbotError):
            error = ActionExecutionError(action or "unknown", str(error), error)
        return cls(success=False, error=error, action=action)

    def to_report(self) -> dict[str, Any]:
        """User-facing summary; never includes tracebacks or causes."""
        if self.success:
            return {"success": True, "action": self.action}
        return {
            "success": False,
            "action": self.action,
            "error": self.error.code if self.error else "UNKNOWN",
            "message": self.error.message if self.error else "Action failed",
        }


ExecuteFn = Callable[[dict[str, Any], "ExecutionContext"], Awaitable[ActionResult]]
ValidateFn = Callable[[dict[str, Any]], "bool | str"]


@dataclass
class ActionHandler:
    """A named action implementation.

    ``validate`` returns ``True`` for an acceptable config, or a reason string.
    """

    name: str
    execute: ExecuteFn
    validate: ValidateFn | None = None
    description: str = ""
    category: str = "general"
    metadata: dict[str, Any] = field(default_factory=dict)


def handler_config(config: dict[str, Any]) -> dict[str, Any]:
    """Strip executor-level keys from an action config."""
    return {key: value for key, value in config.items() if key not in RESERVED_KEYS}
