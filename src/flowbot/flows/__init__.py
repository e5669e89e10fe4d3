"""Flow execution — engine, call frames and timing policies."""

from flowbot.flows.engine import FlowEngine, iter_actions
from flowbot.flows.models import CancelToken, ExecutionContext, Frame, FlowResult, Services
from flowbot.flows.timing import CooldownTracker, Debouncer, Throttler, fingerprint

__all__ = [
    "CancelToken",
    "CooldownTracker",
    "Debouncer",
    "ExecutionContext",
    "FlowEngine",
    "FlowResult",
    "Frame",
    "Services",
    "Throttler",
    "fingerprint",
    "iter_actions",
]
