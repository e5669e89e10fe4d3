"""TCP and UDP pipes on asyncio streams and datagram endpoints."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

from flowbot.pipes.base import PipeSink, ReconnectingPipe, Sleep

logger = logging.getLogger(__name__)

ENCODINGS = ("text", "json", "binary", "hex", "base64")


def encode_frame(data: Any, encoding: str) -> bytes:
    """Turn an outbound value into wire bytes for *encoding*."""
    if isinstance(data, bytes):
        return data
    if encoding == "hex":
        return bytes.fromhex(str(data))
    if encoding == "base64":
        return base64.b64decode(str(data))
    if encoding == "json" or isinstance(data, dict | list):
        return json.dumps(data, default=str).encode("utf-8")
    return str(data).encode("utf-8")


def decode_frame(raw: bytes, encoding: str) -> Any:
    if encoding == "hex":
        return raw.hex()
    if encoding == "base64":
        return base64.b64encode(raw).decode("ascii")
    if encoding == "binary":
        return raw
    text = raw.decode("utf-8", errors="replace")
    if encoding == "json":
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


class TcpPipe(ReconnectingPipe):
    """Delimiter-framed TCP client."""

    kind = "tcp"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(name, config, sink, sleep=sleep)
        self.host: str = config.get("host", "127.0.0.1")
        self.port = int(config.get("port", 0))
        self.encoding: str = config.get("encoding", "text")
        if self.encoding not in ENCODINGS:
            raise ValueError(f"Unknown TCP encoding '{self.encoding}'")
        delimiter = config.get("delimiter", "\n")
        self.delimiter = delimiter.encode("utf-8") if isinstance(delimiter, str) else delimiter
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def _open(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)

    async def _close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as exc:
                logger.debug("TCP pipe %s close: %s", self.name, exc)

    async def _write(self, data: Any, **options: Any) -> None:
        assert self._writer is not None
        self._writer.write(encode_frame(data, self.encoding) + self.delimiter)
        await self._writer.drain()

    async def _read(self) -> None:
        assert self._reader is not None
        while True:
            try:
                frame = await self._reader.readuntil(self.delimiter)
            except asyncio.IncompleteReadError as exc:
                if exc.partial:
                    await self.emit("message", decode_frame(exc.partial, self.encoding))
                return
            await self.emit("message", decode_frame(frame[: -len(self.delimiter)], self.encoding))


class _DatagramBridge(asyncio.DatagramProtocol):
    def __init__(self, pipe: UdpPipe) -> None:
        self.pipe = pipe
        self.closed = asyncio.get_running_loop().create_future()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        payload = {
            "data": decode_frame(data, self.pipe.encoding),
            "host": addr[0],
            "port": addr[1],
        }
        asyncio.ensure_future(self.pipe.emit("message", payload))

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP pipe %s error: %s", self.pipe.name, exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if not self.closed.done():
            self.closed.set_result(exc)


class UdpPipe(ReconnectingPipe):
    """Datagram endpoint; binds ``bind_port`` to receive, sends to ``host:port``."""

    kind = "udp"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(name, config, sink, sleep=sleep)
        self.host: str = config.get("host", "127.0.0.1")
        self.port = int(config.get("port", 0))
        self.bind_port = config.get("bind_port")
        self.encoding: str = config.get("encoding", "text")
        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: _DatagramBridge | None = None

    async def _open(self) -> None:
        loop = asyncio.get_running_loop()
        local = ("0.0.0.0", int(self.bind_port)) if self.bind_port else None
        self._transport, self._protocol = await loop.create_datagram_endpoint(
            lambda: _DatagramBridge(self),
            local_addr=local,
            remote_addr=None if local else (self.host, self.port),
        )

    async def _close(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()

    async def _write(self, data: Any, **options: Any) -> None:
        assert self._transport is not None
        target = (options.get("host", self.host), int(options.get("port", self.port)))
        frame = encode_frame(data, self.encoding)
        if self.bind_port:
            self._transport.sendto(frame, target)
        else:
            self._transport.sendto(frame)

    async def _read(self) -> None:
        assert self._protocol is not None
        await self._protocol.closed
