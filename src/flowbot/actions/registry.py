"""Action registry — name to handler dispatch table with atomic updates."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from flowbot.actions.models import ActionHandler
from flowbot.errors import ActionNotFoundError

logger = logging.getLogger(__name__)


class ActionRegistry:
    """Holds the handler for each action name.

    Writers build a new table and swap it in under a lock, so readers always
    see either the old or the new table, never a partial update.

    Args:
        allow_override: When ``False``, registering an existing name raises
            ``ValueError`` instead of replacing the handler with a warning.
    """

    def __init__(self, allow_override: bool = True) -> None:
        self.allow_override = allow_override
        self._handlers: Mapping[str, ActionHandler] = MappingProxyType({})
        self._lock = threading.Lock()

    def register(self, handler: ActionHandler) -> None:
        """Register a handler; an existing name is overwritten with a warning."""
        with self._lock:
            if handler.name in self._handlers:
                if not self.allow_override:
                    raise ValueError(f"Action '{handler.name}' is already registered")
                logger.warning("Overwriting action handler '%s'", handler.name)
            updated = dict(self._handlers)
            updated[handler.name] = handler
            self._handlers = MappingProxyType(updated)

    def register_all(self, handlers: Iterable[ActionHandler]) -> None:
        for handler in handlers:
            self.register(handler)

    def unregister(self, name: str) -> bool:
        """Remove a handler by name. Returns True if it was registered."""
        with self._lock:
            if name not in self._handlers:
                return False
            updated = dict(self._handlers)
            del updated[name]
            self._handlers = MappingProxyType(updated)
        return True

    def get(self, name: str) -> ActionHandler:
        """Return the handler for *name*.

        Raises:
            ActionNotFoundError: If no handler is registered under *name*.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise ActionNotFoundError(name)
        return handler

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def check(self, config: dict[str, Any]) -> str | None:
        """Run the handler's validator. Returns a reason string if rejected."""
        handler = self.get(config.get("action", ""))
        if handler.validate is None:
            return None
        verdict = handler.validate(config)
        if verdict is True:
            return None
        return verdict if isinstance(verdict, str) and verdict else "Invalid action configuration"

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
