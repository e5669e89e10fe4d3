"""File-watch pipe — watchdog filesystem events bridged into the event loop."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from pathlib import Path
from typing import Any

from flowbot.errors import PipeConnectionError, PipeError
from flowbot.pipes.base import ConnectionState, Pipe, PipeSink

logger = logging.getLogger(__name__)

EVENT_TYPES = ("created", "modified", "deleted", "moved")


class _Bridge:
    """Receives watchdog events on the observer thread."""

    def __init__(self, pipe: FileWatchPipe, loop: asyncio.AbstractEventLoop) -> None:
        self.pipe = pipe
        self.loop = loop

    def dispatch(self, event: Any) -> None:
        if event.is_directory or not self.pipe.accepts(event.event_type, event.src_path):
            return
        data = {"type": event.event_type, "path": str(event.src_path)}
        dest = getattr(event, "dest_path", None)
        if dest:
            data["dest_path"] = str(dest)
        asyncio.run_coroutine_threadsafe(self.pipe.emit(event.event_type, data), self.loop)


class FileWatchPipe(Pipe):
    """Watches ``paths`` for ``events`` (default: all), skipping ``ignore`` globs.

    Each filesystem change is emitted with its type as the event name.
    """

    kind = "file"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        observer_factory: Any = None,
    ) -> None:
        super().__init__(name, config, sink)
        paths = config.get("paths") or config.get("path") or []
        self.paths = [paths] if isinstance(paths, str) else list(paths)
        self.events = set(config.get("events") or EVENT_TYPES)
        self.ignore = list(config.get("ignore") or [])
        self.recursive = bool(config.get("recursive", True))
        self._observer_factory = observer_factory
        self._observer: Any = None

    def accepts(self, event_type: str, path: str) -> bool:
        if event_type not in self.events:
            return False
        name = Path(str(path)).name
        return not any(
            fnmatch.fnmatch(str(path), pattern) or fnmatch.fnmatch(name, pattern)
            for pattern in self.ignore
        )

    def _factory(self) -> Any:
        if self._observer_factory is None:
            from watchdog.observers import Observer

            self._observer_factory = Observer
        return self._observer_factory

    async def connect(self) -> bool:
        if self.is_connected():
            return True
        self._transition(ConnectionState.CONNECTING)
        try:
            observer = self._factory()()
            bridge = _Bridge(self, asyncio.get_running_loop())
            for path in self.paths:
                observer.schedule(bridge, str(Path(path).expanduser()), recursive=self.recursive)
            observer.start()
        except Exception as exc:
            self.last_error = str(exc)
            self._transition(ConnectionState.FAILED)
            raise PipeConnectionError(self.name, str(exc)) from exc
        self._observer = observer
        self._transition(ConnectionState.CONNECTED)
        logger.info("File pipe %s watching %s", self.name, ", ".join(self.paths))
        return True

    async def disconnect(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
        self._transition(ConnectionState.DISCONNECTED)

    async def send(self, data: Any, **options: Any) -> Any:
        raise PipeError(f"File pipe '{self.name}' is inbound only", {"pipe": self.name})
