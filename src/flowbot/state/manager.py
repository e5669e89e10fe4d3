"""State manager — scoped variables over a storage adapter."""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Mapping
from typing import Any

from flowbot.errors import ScopeContextError
from flowbot.spec.models import StateVariable
from flowbot.state.scopes import build_key, scope_ids
from flowbot.state.storage import MemoryStorage, StorageAdapter, StoredValue

logger = logging.getLogger(__name__)

_MISSING = object()


class StateManager:
    """Reads and writes state variables by ``(scope, name)``.

    Declared variables supply the default scope, default value and TTL. The
    *context* argument of each call provides the identifiers the scope needs
    (``guild_id``, ``channel_id``, ``user_id``).
    """

    def __init__(
        self,
        storage: StorageAdapter | None = None,
        variables: list[StateVariable] | None = None,
    ) -> None:
        self.storage = storage or MemoryStorage()
        self._variables: dict[str, StateVariable] = {v.name: v for v in variables or []}

    def declare(self, variable: StateVariable) -> None:
        self._variables[variable.name] = variable

    def declared(self, name: str) -> StateVariable | None:
        return self._variables.get(name)

    @property
    def variables(self) -> list[StateVariable]:
        return list(self._variables.values())

    def _key(self, scope: str | None, name: str, context: Mapping[str, Any] | None) -> str:
        variable = self._variables.get(name)
        scope = scope or (variable.scope if variable else "global")
        return build_key(scope, name, scope_ids(scope, context or {}))

    def _default(self, name: str) -> Any:
        variable = self._variables.get(name)
        return copy.deepcopy(variable.default) if variable else None

    async def get(
        self,
        scope: str | None,
        name: str,
        context: Mapping[str, Any] | None = None,
        default: Any = _MISSING,
    ) -> Any:
        stored = await self.storage.get(self._key(scope, name, context))
        if stored is None:
            return self._default(name) if default is _MISSING else default
        return stored.value

    async def set(
        self,
        scope: str | None,
        name: str,
        value: Any,
        context: Mapping[str, Any] | None = None,
        ttl: float | None = None,
    ) -> None:
        key = self._key(scope, name, context)
        if ttl is None and name in self._variables:
            ttl = self._variables[name].ttl_seconds
        now = time.time()
        existing = await self.storage.get(key)
        await self.storage.set(
            key,
            StoredValue(
                value=value,
                expires_at=now + ttl if ttl else None,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            ),
        )
        logger.debug("State %s set", key)

    async def delete(
        self, scope: str | None, name: str, context: Mapping[str, Any] | None = None
    ) -> bool:
        return await self.storage.delete(self._key(scope, name, context))

    async def increment(
        self,
        scope: str | None,
        name: str,
        by: float = 1,
        context: Mapping[str, Any] | None = None,
    ) -> float:
        current = await self.get(scope, name, context)
        value = (current or 0) + by
        await self.set(scope, name, value, context)
        return value

    async def load(self, context: Mapping[str, Any]) -> dict[str, Any]:
        """Current values of every declared variable the context can address."""
        values: dict[str, Any] = {}
        for name, variable in self._variables.items():
            try:
                values[name] = await self.get(variable.scope, name, context)
            except ScopeContextError:
                continue
        return values

    async def close(self) -> None:
        await self.storage.close()
