"""Flowbot error hierarchy.

Structured exception types for the execution engine. Every error carries a
stable ``code`` and a ``details`` dict so it can be reported to users without
leaking internal diagnostics.
"""

from __future__ import annotations


class FlowbotError(Exception):
    """Base error for all Flowbot exceptions."""

    code = "FLOWBOT_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Expression Errors
class ExpressionError(FlowbotError):
    """Base error for expression and condition evaluation."""

    code = "EXPRESSION_ERROR"


class ExpressionSyntaxError(ExpressionError):
    """Expression or condition could not be parsed."""

    code = "EXPR_SYNTAX"

    def __init__(self, expression: str, reason: str):
        super().__init__(
            f'Expression syntax error in "{expression}": {reason}',
            {"expression": expression},
        )
        self.expression = expression
        self.reason = reason


class UndefinedVariableError(ExpressionError):
    """A referenced name is absent from the context in strict mode."""

    code = "EXPR_UNDEFINED_VAR"

    def __init__(self, name: str, expression: str):
        super().__init__(
            f'Undefined variable "{name}" in expression',
            {"name": name, "expression": expression},
        )
        self.name = name
        self.expression = expression


class EvaluationTimeoutError(ExpressionError):
    """Expression evaluation exceeded its time budget."""

    code = "TIMEOUT"

    def __init__(self, expression: str, timeout_ms: float):
        super().__init__(
            f"Expression evaluation timed out after {timeout_ms:g}ms",
            {"expression": expression, "timeout_ms": timeout_ms},
        )
        self.expression = expression
        self.timeout_ms = timeout_ms


class ExpressionEvaluationError(ExpressionError):
    """Expression parsed but failed while evaluating."""

    code = "EXPR_EVALUATION"

    def __init__(self, expression: str, reason: str):
        super().__init__(
            f'Error evaluating "{expression}": {reason}',
            {"expression": expression},
        )
        self.expression = expression


# Resolution Errors
class ResolutionError(FlowbotError):
    """A named entity could not be resolved."""

    code = "RESOLUTION_ERROR"


class ActionNotFoundError(ResolutionError):
    """No handler is registered under the action name."""

    code = "ACTION_NOT_FOUND"

    def __init__(self, action_name: str):
        super().__init__(f"Action not found: {action_name}", {"action": action_name})
        self.action_name = action_name


class FlowNotFoundError(ResolutionError):
    """Flow definition not found."""

    code = "FLOW_NOT_FOUND"

    def __init__(self, flow_name: str):
        super().__init__(f"Flow not found: {flow_name}", {"flow": flow_name})
        self.flow_name = flow_name


class PipeNotFoundError(ResolutionError):
    """Pipe definition not found."""

    code = "PIPE_NOT_FOUND"

    def __init__(self, pipe_name: str):
        super().__init__(f"Pipe not found: {pipe_name}", {"pipe": pipe_name})
        self.pipe_name = pipe_name


# Limit Errors
class LimitError(FlowbotError):
    """A configured execution limit was hit."""

    code = "LIMIT_ERROR"


class RecursionLimitExceeded(LimitError):
    """Flow call depth exceeded the configured maximum."""

    code = "FLOW_MAX_DEPTH"

    def __init__(self, max_depth: int, flow_name: str | None = None):
        super().__init__(
            f"Maximum flow call depth ({max_depth}) exceeded",
            {"max_depth": max_depth, "flow": flow_name},
        )
        self.max_depth = max_depth
        self.flow_name = flow_name


class RateLimitExceeded(LimitError):
    """Outbound request rate exceeded its window budget."""

    code = "RATE_LIMITED"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float | None = None):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


class LoopLimitExceeded(LimitError):
    """A loop or fan-out exceeded its iteration budget."""

    code = "LOOP_LIMIT"


# Action Errors
class ActionError(FlowbotError):
    """Base error for action execution failures."""

    code = "ACTION_ERROR"


class ActionValidationError(ActionError):
    """Action configuration was rejected by the handler's validator."""

    code = "ACTION_INVALID_CONFIG"

    def __init__(self, action_name: str, reason: str):
        super().__init__(
            f'Invalid configuration for action "{action_name}": {reason}',
            {"action": action_name, "reason": reason},
        )
        self.action_name = action_name
        self.reason = reason


class ActionExecutionError(ActionError):
    """Action handler raised while executing."""

    code = "ACTION_EXECUTION_FAILED"

    def __init__(self, action_name: str, reason: str, cause: Exception | None = None):
        details = {"action": action_name}
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__(f'Action "{action_name}" failed: {reason}', details)
        self.action_name = action_name
        self.cause = cause


class FlowAbortedError(ActionError):
    """Flow or trigger was aborted before completing."""

    code = "FLOW_ABORTED"

    def __init__(self, flow_name: str, reason: str | None = None):
        suffix = f": {reason}" if reason else ""
        super().__init__(
            f'Flow "{flow_name}" was aborted{suffix}',
            {"flow": flow_name, "reason": reason},
        )
        self.flow_name = flow_name
        self.reason = reason


class FlowParameterError(ActionError):
    """Flow arguments did not satisfy the declared parameters."""

    code = "FLOW_PARAMETER"


# Pipe Errors
class PipeError(FlowbotError):
    """Base error for external connector failures."""

    code = "PIPE_ERROR"


class PipeConnectionError(PipeError):
    """Connecting or reconnecting a pipe failed."""

    code = "PIPE_CONNECTION"

    def __init__(self, pipe_name: str, reason: str, attempts: int = 0):
        super().__init__(
            f'Pipe "{pipe_name}" connection failed: {reason}',
            {"pipe": pipe_name, "attempts": attempts},
        )
        self.pipe_name = pipe_name
        self.attempts = attempts


class PipeUnavailable(PipeError):
    """Pipe is not connected (or has failed) and cannot accept sends."""

    code = "PIPE_UNAVAILABLE"

    def __init__(self, pipe_name: str, state: str):
        super().__init__(
            f'Pipe "{pipe_name}" is unavailable (state: {state})',
            {"pipe": pipe_name, "state": state},
        )
        self.pipe_name = pipe_name
        self.state = state


class PipeStateError(PipeError):
    """An illegal connection state transition was attempted."""

    code = "PIPE_STATE"


# Verification Errors
class VerificationError(FlowbotError):
    """Inbound webhook authenticity check failed."""

    code = "VERIFICATION_FAILED"


# Specification Errors
class SpecValidationError(FlowbotError):
    """Specification data is invalid (unknown actions, bad configs, duplicates)."""

    code = "SPEC_INVALID"

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message, {"problems": problems or []})
        self.problems = problems or []


# State Errors
class StateError(FlowbotError):
    """Error in state management."""

    code = "STATE_ERROR"


class ScopeContextError(StateError):
    """The context lacks the identifiers a state scope requires."""

    code = "STATE_SCOPE_CONTEXT"
