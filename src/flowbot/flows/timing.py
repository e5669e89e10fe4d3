"""Timing policies — command cooldowns, event debounce and throttle."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from flowbot.expression.transforms import get_path

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def fingerprint(name: str, fields: list[str], context: Mapping[str, Any]) -> str:
    """Key for a (trigger, context) pair built from the configured fields."""
    parts = [name]
    for field_name in fields:
        parts.append(f"{field_name}={get_path(context, field_name)}")
    return "|".join(parts)


def cooldown_key(command: str, per: str, context: Mapping[str, Any]) -> str:
    if per == "global":
        return f"{command}:global"
    return f"{command}:{per}:{context.get(f'{per}_id')}"


@dataclass
class _Window:
    started: float
    count: int


class CooldownTracker:
    """Fixed-window counters: ``rate`` runs per window per key.

    A window resets only once it has fully elapsed.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def hit(self, key: str, rate: int, window: float) -> float | None:
        """Record a run for *key*.

        Returns:
            ``None`` if the run is allowed, otherwise the seconds remaining
            until the window resets.
        """
        now = self._clock()
        current = self._windows.get(key)
        if current is None or now - current.started >= window:
            self._windows[key] = _Window(started=now, count=1)
            return None
        if current.count < rate:
            current.count += 1
            return None
        return window - (now - current.started)

    def remaining(self, key: str, window: float) -> float:
        current = self._windows.get(key)
        if current is None:
            return 0.0
        return max(0.0, window - (self._clock() - current.started))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)


class Throttler:
    """Leading-edge throttle: at most one run per window per key."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._last: dict[str, float] = {}

    def allow(self, key: str, window: float) -> bool:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < window:
            return False
        self._last[key] = now
        return True


class Debouncer:
    """Collapses bursts per key into one call after a quiet period.

    Each new event for a key cancels the pending timer and starts a new one;
    the callback receives the payload of the last event.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    def submit(
        self,
        key: str,
        delay: float,
        callback: Callable[[Any], Awaitable[Any]],
        payload: Any = None,
    ) -> None:
        pending = self._tasks.pop(key, None)
        if pending is not None and not pending.done():
            pending.cancel()
        self._tasks[key] = asyncio.create_task(self._fire(key, delay, callback, payload))

    async def _fire(
        self,
        key: str,
        delay: float,
        callback: Callable[[Any], Awaitable[Any]],
        payload: Any,
    ) -> None:
        await asyncio.sleep(delay)
        task = asyncio.current_task()
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Detached from the key so a new event cannot cancel a running callback
        if task is not None:
            self._running.add(task)
        try:
            await callback(payload)
        except Exception:
            logger.exception("Debounced handler for '%s' failed", key)
        finally:
            self._running.discard(task)

    def pending(self, key: str) -> bool:
        return key in self._tasks

    async def drain(self) -> None:
        """Wait for every pending and running callback."""
        while self._tasks or self._running:
            await asyncio.gather(
                *self._tasks.values(), *self._running, return_exceptions=True
            )

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
