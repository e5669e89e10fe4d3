"""WebSocket pipe — persistent JSON/text client connection."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

from websockets.asyncio.client import connect as ws_connect

from flowbot.errors import PipeError
from flowbot.pipes.base import PipeSink, ReconnectingPipe, Sleep
from flowbot.utils.duration import parse_duration

logger = logging.getLogger(__name__)


class WebSocketPipe(ReconnectingPipe):
    """Client connection to ``url``.

    JSON messages carrying an ``event`` field are emitted as that event;
    anything else is emitted as ``message``. Replies to :meth:`request` are
    matched by ``id`` and not emitted.
    """

    kind = "websocket"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        connector: Any = ws_connect,
    ) -> None:
        super().__init__(name, config, sink, sleep=sleep)
        self.url: str = config.get("url", "")
        self.headers: dict[str, str] = dict(config.get("headers") or {})
        self._connector = connector
        self._ws: Any = None
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[Any]] = {}

    async def _open(self) -> None:
        self._ws = await self._connector(
            self.url,
            additional_headers=self.headers or None,
            ping_interval=None,
        )

    async def _close(self) -> None:
        ws, self._ws = self._ws, None
        for future in self._pending.values():
            if not future.done():
                future.set_exception(PipeError(f"WebSocket pipe '{self.name}' closed"))
        self._pending.clear()
        if ws is not None:
            await ws.close()

    async def _write(self, data: Any, **options: Any) -> None:
        payload = data if isinstance(data, str | bytes) else json.dumps(data, default=str)
        await self._ws.send(payload)

    async def _ping(self) -> None:
        pong = await self._ws.ping()
        await pong

    async def _read(self) -> None:
        async for raw in self._ws:
            await self._handle_message(raw)

    async def _handle_message(self, raw: str | bytes) -> None:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            data: Any = json.loads(text)
        except ValueError:
            await self.emit("message", text)
            return
        if isinstance(data, dict):
            reply_to = data.get("id")
            if reply_to is not None and str(reply_to) in self._pending:
                future = self._pending.pop(str(reply_to))
                if not future.done():
                    future.set_result(data)
                return
            event = data.get("event")
            if isinstance(event, str) and event:
                await self.emit(event, data.get("data", data))
                return
        await self.emit("message", data)

    async def request(self, data: dict[str, Any], timeout: Any = "30s") -> Any:
        """Send *data* with a fresh ``id`` and wait for the reply carrying it."""
        request_id = str(next(self._ids))
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send({**data, "id": request_id})
            return await asyncio.wait_for(future, parse_duration(timeout, default=30.0))
        except asyncio.TimeoutError:
            raise PipeError(
                f"WebSocket pipe '{self.name}' request {request_id} timed out"
            ) from None
        finally:
            self._pending.pop(request_id, None)
