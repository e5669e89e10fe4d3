"""Pipe manager — the live set of connectors, created from spec definitions."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from flowbot.errors import PipeError, PipeNotFoundError
from flowbot.pipes.base import Pipe, PipeResponse, PipeSink
from flowbot.pipes.database import DatabasePipe
from flowbot.pipes.file import FileWatchPipe
from flowbot.pipes.http import HttpPipe
from flowbot.pipes.mqtt import MqttPipe
from flowbot.pipes.tcp import TcpPipe, UdpPipe
from flowbot.pipes.webhook import WebhookPipe
from flowbot.pipes.websocket import WebSocketPipe
from flowbot.spec.models import PipeDefinition

logger = logging.getLogger(__name__)

PipeFactory = Callable[[str, dict[str, Any], PipeSink | None], Pipe]

PIPE_TYPES: dict[str, PipeFactory] = {
    "http": HttpPipe,
    "websocket": WebSocketPipe,
    "mqtt": MqttPipe,
    "tcp": TcpPipe,
    "udp": UdpPipe,
    "webhook": WebhookPipe,
    "database": DatabasePipe,
    "file": FileWatchPipe,
}


class PipeManager:
    """Creates, connects and routes traffic for every configured pipe.

    The pipe table is replaced wholesale on every change, so lookups never
    observe a half-registered pipe. Inbound events from any pipe go to
    ``sink`` (normally the dispatcher).
    """

    def __init__(
        self,
        sink: PipeSink | None = None,
        factories: Mapping[str, PipeFactory] | None = None,
    ) -> None:
        self._sink = sink
        self._factories = dict(factories or PIPE_TYPES)
        self._pipes: Mapping[str, Pipe] = MappingProxyType({})
        self._definitions: dict[str, PipeDefinition] = {}
        self._lock = threading.Lock()

    def set_sink(self, sink: PipeSink | None) -> None:
        self._sink = sink
        for pipe in self._pipes.values():
            pipe.set_sink(sink)

    def create(self, definition: PipeDefinition) -> Pipe:
        factory = self._factories.get(definition.type)
        if factory is None:
            raise PipeError(f"Unsupported pipe type '{definition.type}'", {"pipe": definition.name})
        return factory(definition.name, definition.options, self._sink)

    def load(self, definitions: list[PipeDefinition]) -> None:
        for definition in definitions:
            self.add(self.create(definition), definition)

    def add(self, pipe: Pipe, definition: PipeDefinition | None = None) -> None:
        with self._lock:
            if pipe.name in self._pipes:
                logger.warning("Replacing pipe '%s'", pipe.name)
            updated = dict(self._pipes)
            updated[pipe.name] = pipe
            self._pipes = MappingProxyType(updated)
            if definition is not None:
                self._definitions[pipe.name] = definition
        if self._sink is not None:
            pipe.set_sink(self._sink)
        logger.debug("Registered %s pipe '%s'", pipe.kind, pipe.name)

    async def remove(self, name: str) -> bool:
        with self._lock:
            pipe = self._pipes.get(name)
            if pipe is None:
                return False
            updated = dict(self._pipes)
            del updated[name]
            self._pipes = MappingProxyType(updated)
            self._definitions.pop(name, None)
        await pipe.disconnect()
        return True

    def get(self, name: str) -> Pipe:
        try:
            return self._pipes[name]
        except KeyError:
            raise PipeNotFoundError(name) from None

    def has(self, name: str) -> bool:
        return name in self._pipes

    def names(self) -> list[str]:
        return list(self._pipes)

    def definition(self, name: str) -> PipeDefinition | None:
        return self._definitions.get(name)

    def of_kind(self, kind: str) -> list[Pipe]:
        return [pipe for pipe in self._pipes.values() if pipe.kind == kind]

    async def connect(self, name: str) -> bool:
        return await self.get(name).connect()

    async def disconnect(self, name: str) -> None:
        await self.get(name).disconnect()

    async def connect_all(self) -> dict[str, bool]:
        """Connect every ``auto_connect`` pipe concurrently; failures are logged."""
        names = [
            name
            for name in self._pipes
            if self._definitions.get(name) is None or self._definitions[name].auto_connect
        ]
        outcomes = await asyncio.gather(
            *(self._pipes[name].connect() for name in names), return_exceptions=True
        )
        results: dict[str, bool] = {}
        for name, outcome in zip(names, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Pipe %s failed to connect: %s", name, outcome)
                results[name] = False
            else:
                results[name] = bool(outcome)
        return results

    async def disconnect_all(self) -> None:
        for name, pipe in self._pipes.items():
            try:
                await pipe.disconnect()
            except Exception:
                logger.exception("Error disconnecting pipe %s", name)

    async def send(self, name: str, data: Any, **options: Any) -> Any:
        return await self.get(name).send(data, **options)

    async def request(
        self,
        name: str,
        method: str = "GET",
        path: str = "",
        body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> PipeResponse:
        pipe = self.get(name)
        if not isinstance(pipe, HttpPipe):
            raise PipeError(f"Pipe '{name}' is not an HTTP pipe", {"pipe": name})
        return await pipe.request(method, path, body, params=params, headers=headers)

    async def handle_webhook(
        self, path: str, body: bytes, headers: Mapping[str, str]
    ) -> PipeResponse:
        """Route an inbound HTTP request to the webhook pipe bound to *path*."""
        for pipe in self.of_kind("webhook"):
            if isinstance(pipe, WebhookPipe) and pipe.path == path:
                return await pipe.handle_request(body, headers)
        return PipeResponse(success=False, error=f"No webhook at {path}", status=404)

    def webhooks(self) -> list[WebhookPipe]:
        return [pipe for pipe in self.of_kind("webhook") if isinstance(pipe, WebhookPipe)]

    def status(self) -> list[dict[str, Any]]:
        return [pipe.status() for pipe in self._pipes.values()]

