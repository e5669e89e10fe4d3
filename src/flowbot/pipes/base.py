"""Pipe protocol — connection state machine and the reconnecting base class."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from flowbot.errors import PipeStateError, PipeUnavailable
from flowbot.utils.backoff import BackoffPolicy
from flowbot.utils.duration import parse_duration

logger = logging.getLogger(__name__)

PipeSink = Callable[["Pipe", str, Any], Awaitable[None]]
Sleep = Callable[[float], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# Every state may also move to DISCONNECTED on an explicit stop.
TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.RECONNECTING, ConnectionState.FAILED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.RECONNECTING}),
    ConnectionState.RECONNECTING: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING}),
}


@dataclass
class PipeResponse:
    """Result of a request/response style pipe call."""

    success: bool
    data: Any = None
    error: str | None = None
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)


class Pipe(ABC):
    """Base class for every connector.

    Inbound traffic is handed to the sink as ``(pipe, event, data)``; the
    pipe manager points the sink at the dispatcher.
    """

    kind = "pipe"

    def __init__(self, name: str, config: dict[str, Any], sink: PipeSink | None = None) -> None:
        self.name = name
        self.config = config
        self.retry_count = 0
        self.last_error: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._sink = sink

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _transition(self, new: ConnectionState) -> None:
        current = self._state
        if new == current:
            return
        if new != ConnectionState.DISCONNECTED and new not in TRANSITIONS[current]:
            raise PipeStateError(
                f"Pipe '{self.name}' cannot move from {current.value} to {new.value}",
                {"pipe": self.name, "from": current.value, "to": new.value},
            )
        self._state = new
        logger.debug("Pipe %s: %s -> %s", self.name, current.value, new.value)

    def set_sink(self, sink: PipeSink | None) -> None:
        self._sink = sink

    async def emit(self, event: str, data: Any) -> None:
        """Hand an inbound event to the sink; sink errors are logged, not raised."""
        if self._sink is None:
            logger.debug("Pipe %s dropped %s event (no sink)", self.name, event)
            return
        try:
            await self._sink(self, event, data)
        except Exception:
            logger.exception("Error handling %s event from pipe %s", event, self.name)

    def matches(self, pattern: str, event: str) -> bool:
        """Whether a handler registered for *pattern* receives *event*."""
        return pattern in (event, "*")

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @abstractmethod
    async def connect(self) -> bool:
        """Open the connection; return ``True`` once connected."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection and move to DISCONNECTED."""

    @abstractmethod
    async def send(self, data: Any, **options: Any) -> Any:
        """Send an outbound message."""

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "state": self._state.value,
            "connected": self.is_connected(),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }


class ReconnectingPipe(Pipe):
    """Persistent connection with backoff-governed reconnects and a heartbeat.

    Subclasses implement ``_open``, ``_close`` and ``_write``, and may
    override ``_read`` (runs until the connection drops) and ``_ping``
    (raises when the peer does not answer).

    ``reconnect.max_attempts`` failed attempts in a row move the pipe to
    FAILED, where it stays until :meth:`connect` is called again.
    """

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__(name, config, sink)
        self.backoff = BackoffPolicy.from_config(config.get("reconnect"))
        heartbeat = config.get("heartbeat") or {}
        if not isinstance(heartbeat, dict):
            heartbeat = {"interval": heartbeat}
        self.heartbeat_interval = parse_duration(heartbeat.get("interval"), default=0.0)
        self.heartbeat_timeout = parse_duration(heartbeat.get("timeout"), default=10.0)
        self._sleep = sleep
        self._stopping = False
        self._tasks: set[asyncio.Task[None]] = set()

    # Transport hooks
    @abstractmethod
    async def _open(self) -> None:
        """Establish the transport; raise on failure."""

    @abstractmethod
    async def _close(self) -> None: ...

    @abstractmethod
    async def _write(self, data: Any, **options: Any) -> Any: ...

    async def _read(self) -> None:
        """Consume inbound traffic until the connection closes."""

    async def _ping(self) -> None:
        """Probe the peer; the default transport has no heartbeat."""

    # Lifecycle
    async def connect(self) -> bool:
        """Manual connect. Resets the attempt budget, also out of FAILED."""
        if self.is_connected():
            return True
        self._stopping = False
        self.retry_count = 0
        self._transition(ConnectionState.CONNECTING)
        return await self._connect_loop()

    async def _connect_loop(self) -> bool:
        while True:
            try:
                await self._open()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.retry_count += 1
                self.last_error = str(exc)
                if self.backoff.exhausted(self.retry_count):
                    self._transition(ConnectionState.FAILED)
                    logger.error(
                        "Pipe %s failed after %d attempt(s): %s",
                        self.name,
                        self.retry_count,
                        exc,
                    )
                    return False
                delay = self.backoff.delay_for(self.retry_count)
                logger.warning(
                    "Pipe %s connect attempt %d failed (%s); retrying in %.1fs",
                    self.name,
                    self.retry_count,
                    exc,
                    delay,
                )
                self._transition(ConnectionState.RECONNECTING)
                await self._sleep(delay)
                if self._stopping:
                    return False
                self._transition(ConnectionState.CONNECTING)
                continue

            self._transition(ConnectionState.CONNECTED)
            self.retry_count = 0
            self.last_error = None
            logger.info("Pipe %s connected", self.name)
            self._start_background()
            return True

    async def disconnect(self) -> None:
        self._stopping = True
        await self._stop_background()
        try:
            await self._close()
        except Exception as exc:
            logger.debug("Pipe %s close error: %s", self.name, exc)
        self._transition(ConnectionState.DISCONNECTED)
        self.retry_count = 0
        logger.info("Pipe %s disconnected", self.name)

    async def send(self, data: Any, **options: Any) -> Any:
        if not self.is_connected():
            raise PipeUnavailable(self.name, self._state.value)
        return await self._write(data, **options)

    # Background work
    def _start_background(self) -> None:
        self._spawn(self._run_reader())
        if self.heartbeat_interval > 0:
            self._spawn(self._heartbeat_loop())

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _stop_background(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("Pipe %s background task ended with %s", self.name, exc)

    async def _run_reader(self) -> None:
        try:
            await self._read()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._handle_drop(f"read failed: {exc}")
            return
        await self._handle_drop("connection closed")

    async def _heartbeat_loop(self) -> None:
        while self.is_connected():
            await self._sleep(self.heartbeat_interval)
            if not await self.check_heartbeat():
                return

    async def check_heartbeat(self) -> bool:
        """Ping once. A miss tears the connection down and reconnects."""
        if not self.is_connected():
            return False
        try:
            await asyncio.wait_for(self._ping(), self.heartbeat_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning("Pipe %s missed heartbeat: %s", self.name, reason)
            await self._handle_drop(f"heartbeat missed: {reason}")
            return False
        return True

    async def _handle_drop(self, reason: str) -> None:
        if self._stopping or not self.is_connected():
            return
        self.last_error = reason
        self._transition(ConnectionState.RECONNECTING)
        await self._stop_background()
        try:
            await self._close()
        except Exception as exc:
            logger.debug("Pipe %s close error: %s", self.name, exc)
        # Backoff starts over from its first step
        self.retry_count = 0
        self._transition(ConnectionState.CONNECTING)
        await self._connect_loop()
