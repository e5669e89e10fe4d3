"""Action registry and handler contract."""

from flowbot.actions.models import ActionHandler, ActionResult
from flowbot.actions.registry import ActionRegistry

__all__ = ["ActionHandler", "ActionRegistry", "ActionResult"]
