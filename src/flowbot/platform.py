"""Chat-platform boundary.

The engine never speaks a platform's wire protocol. Message actions call
:meth:`PlatformGateway.perform` with an action kind and a payload; an adapter
for a real platform translates that into API calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class PlatformGateway(Protocol):
    async def perform(self, kind: str, payload: dict[str, Any]) -> Any: ...


@dataclass
class PlatformCall:
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)


class RecordingPlatform:
    """Records every call instead of talking to a platform."""

    def __init__(self) -> None:
        self.calls: list[PlatformCall] = []
        self._counter = 0

    async def perform(self, kind: str, payload: dict[str, Any]) -> Any:
        self.calls.append(PlatformCall(kind=kind, payload=dict(payload)))
        self._counter += 1
        logger.debug("Platform %s: %s", kind, payload)
        return {"id": str(self._counter), "kind": kind}

    def of_kind(self, kind: str) -> list[PlatformCall]:
        return [call for call in self.calls if call.kind == kind]

    def clear(self) -> None:
        self.calls.clear()
