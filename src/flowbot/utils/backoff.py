"""Backoff policy for reconnecting connectors and retried requests."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Literal

BackoffStrategy = Literal["exponential", "linear", "fixed"]


@dataclass
class BackoffPolicy:
    """How long to wait before each retry.

    ``max_attempts`` bounds the total number of connection attempts (the first
    try included). ``0`` means unbounded.
    """

    strategy: BackoffStrategy = "exponential"
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    max_attempts: int = 5
    multiplier: float = 2.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-indexed: the wait after the first failure)."""
        step = max(attempt, 1)
        if self.strategy == "fixed":
            delay = self.base_delay
        elif self.strategy == "linear":
            delay = self.base_delay * step
        else:
            delay = self.base_delay * (self.multiplier ** (step - 1))
        delay = min(delay, self.max_delay)
        if self.jitter:
            # Up to 25% either way
            delay = delay * (0.75 + random.random() * 0.5)
        return delay

    def exhausted(self, attempts: int) -> bool:
        """Return ``True`` once *attempts* connection attempts have been used up."""
        return self.max_attempts > 0 and attempts >= self.max_attempts

    @classmethod
    def from_config(cls, data: dict | None) -> BackoffPolicy:
        """Build a policy from a pipe's ``reconnect`` mapping."""
        from flowbot.utils.duration import parse_duration

        data = data or {}
        return cls(
            strategy=data.get("backoff", data.get("strategy", "exponential")),
            base_delay=parse_duration(data.get("delay", data.get("base_delay")), default=1.0),
            max_delay=parse_duration(data.get("max_delay"), default=30.0),
            max_attempts=int(data.get("max_attempts", 5)),
            multiplier=float(data.get("multiplier", 2.0)),
            jitter=bool(data.get("jitter", False)),
        )
