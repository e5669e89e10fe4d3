"""Tests for cooldowns, throttling and debouncing."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeClock

from flowbot.flows.timing import CooldownTracker, Debouncer, Throttler, cooldown_key, fingerprint


class TestCooldownTracker:
    def test_rate_per_window(self, clock: FakeClock) -> None:
        tracker = CooldownTracker(clock)
        assert tracker.hit("k", rate=2, window=10) is None
        assert tracker.hit("k", rate=2, window=10) is None
        clock.advance(4)
        assert tracker.hit("k", rate=2, window=10) == pytest.approx(6)

    def test_window_resets_only_after_elapsing(self, clock: FakeClock) -> None:
        tracker = CooldownTracker(clock)
        tracker.hit("k", rate=1, window=5)
        clock.advance(4.9)
        assert tracker.hit("k", rate=1, window=5) is not None
        clock.advance(0.1)
        assert tracker.hit("k", rate=1, window=5) is None

    def test_keys_are_independent(self, clock: FakeClock) -> None:
        tracker = CooldownTracker(clock)
        tracker.hit("a", rate=1, window=5)
        assert tracker.hit("b", rate=1, window=5) is None

    def test_remaining_and_reset(self, clock: FakeClock) -> None:
        tracker = CooldownTracker(clock)
        assert tracker.remaining("k", 5) == 0.0
        tracker.hit("k", rate=1, window=5)
        clock.advance(2)
        assert tracker.remaining("k", 5) == pytest.approx(3)
        tracker.reset("k")
        assert tracker.hit("k", rate=1, window=5) is None


class TestThrottler:
    def test_leading_edge(self, clock: FakeClock) -> None:
        throttler = Throttler(clock)
        assert throttler.allow("k", 1.0) is True
        clock.advance(0.5)
        assert throttler.allow("k", 1.0) is False
        clock.advance(0.5)
        assert throttler.allow("k", 1.0) is True


class TestDebouncer:
    @pytest.mark.asyncio()
    async def test_burst_delivers_last_payload_once(self) -> None:
        received: list[int] = []

        async def callback(payload: int) -> None:
            received.append(payload)

        debouncer = Debouncer()
        for value in range(5):
            debouncer.submit("k", 0.02, callback, value)
        assert debouncer.pending("k")
        await debouncer.drain()
        assert received == [4]
        assert not debouncer.pending("k")

    @pytest.mark.asyncio()
    async def test_callback_errors_are_contained(self) -> None:
        async def boom(payload: object) -> None:
            raise RuntimeError("boom")

        debouncer = Debouncer()
        debouncer.submit("k", 0, boom)
        await debouncer.drain()

    @pytest.mark.asyncio()
    async def test_cancel_all(self) -> None:
        received: list[object] = []

        async def callback(payload: object) -> None:
            received.append(payload)

        debouncer = Debouncer()
        debouncer.submit("k", 0.05, callback, 1)
        debouncer.cancel_all()
        await asyncio.sleep(0.1)
        assert received == []


class TestKeys:
    def test_fingerprint_uses_dotted_fields(self) -> None:
        ctx = {"guild": {"id": "g1"}, "user_id": "u1"}
        assert fingerprint("h", ["guild.id", "user_id"], ctx) == "h|guild.id=g1|user_id=u1"

    def test_cooldown_key(self) -> None:
        ctx = {"user_id": "u1", "guild_id": "g1"}
        assert cooldown_key("daily", "user", ctx) == "daily:user:u1"
        assert cooldown_key("daily", "global", ctx) == "daily:global"
