"""Tests for the HTTP pipe, using httpx's mock transport."""

from __future__ import annotations

import base64
import json

import httpx
import pytest
from conftest import FakeClock, RecordingSleep

from flowbot.errors import RateLimitExceeded
from flowbot.pipes.base import ConnectionState
from flowbot.pipes.http import FixedWindowLimiter, HttpPipe


class Backend:
    """Request handler for ``httpx.MockTransport`` with scripted responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0] if self.responses else httpx.Response(200, json={})


def make_pipe(backend, sleep: RecordingSleep, clock: FakeClock | None = None, **config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return HttpPipe(
        "api",
        {"base_url": "https://api.example.test/", **config},
        client=client,
        sleep=sleep,
        clock=clock or FakeClock(),
    )


class TestRequests:
    @pytest.mark.asyncio()
    async def test_json_round_trip(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend(httpx.Response(201, json={"id": 7}))
        pipe = make_pipe(backend, fake_sleep, headers={"X-App": "flowbot"})

        response = await pipe.post("/items", {"name": "widget"}, params={"dry": "1"})

        assert response.success is True
        assert response.status == 201
        assert response.data == {"id": 7}
        sent = backend.requests[0]
        assert str(sent.url) == "https://api.example.test/items?dry=1"
        assert sent.headers["X-App"] == "flowbot"
        assert json.loads(sent.content) == {"name": "widget"}

    @pytest.mark.asyncio()
    async def test_client_error_is_not_retried(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend(httpx.Response(404, text="missing"))
        pipe = make_pipe(backend, fake_sleep, retry={"attempts": 3, "delay": "1s"})
        response = await pipe.get("/nope")
        assert response.success is False
        assert response.error == "HTTP 404"
        assert response.data == "missing"
        assert len(backend.requests) == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio()
    async def test_server_errors_are_retried(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend(
            httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"ok": True})
        )
        pipe = make_pipe(backend, fake_sleep, retry={"attempts": 2, "delay": "500ms"})
        response = await pipe.get("/flaky")
        assert response.data == {"ok": True}
        assert fake_sleep.delays == [0.5, 0.5]

    @pytest.mark.asyncio()
    async def test_network_error_becomes_failed_response(
        self, fake_sleep: RecordingSleep
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        pipe = make_pipe(refuse, fake_sleep, retry={"attempts": 1, "delay": 2})
        response = await pipe.get("/down")
        assert response.success is False
        assert "refused" in response.error
        assert fake_sleep.delays == [2.0]
        assert pipe.last_error == "refused"

    @pytest.mark.asyncio()
    async def test_absolute_url_bypasses_base(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend()
        pipe = make_pipe(backend, fake_sleep)
        await pipe.get("https://other.example.test/x")
        assert backend.requests[0].url.host == "other.example.test"

    @pytest.mark.asyncio()
    async def test_always_connected(self, fake_sleep: RecordingSleep) -> None:
        pipe = make_pipe(Backend(), fake_sleep)
        assert pipe.is_connected() is True
        await pipe.connect()
        assert pipe.state == ConnectionState.CONNECTED


class TestAuth:
    @pytest.mark.asyncio()
    async def test_bearer(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend()
        pipe = make_pipe(backend, fake_sleep, auth={"type": "bearer", "token": "t0k"})
        await pipe.get("/me")
        assert backend.requests[0].headers["Authorization"] == "Bearer t0k"

    @pytest.mark.asyncio()
    async def test_custom_header(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend()
        auth = {"type": "header", "header_name": "X-Api-Key", "token": "k"}
        pipe = make_pipe(backend, fake_sleep, auth=auth)
        await pipe.get("/me")
        assert backend.requests[0].headers["X-Api-Key"] == "k"

    @pytest.mark.asyncio()
    async def test_basic(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend()
        auth = {"type": "basic", "username": "u", "password": "p"}
        pipe = make_pipe(backend, fake_sleep, auth=auth)
        await pipe.get("/me")
        expected = "Basic " + base64.b64encode(b"u:p").decode()
        assert backend.requests[0].headers["Authorization"] == expected


class TestRateLimit:
    @pytest.mark.asyncio()
    async def test_fail_fast(self, fake_sleep: RecordingSleep) -> None:
        pipe = make_pipe(Backend(), fake_sleep, rate_limit={"requests": 2, "per": "1s"})
        await pipe.get("/a")
        await pipe.get("/b")
        with pytest.raises(RateLimitExceeded) as exc_info:
            await pipe.get("/c")
        assert exc_info.value.retry_after == pytest.approx(1.0)

    @pytest.mark.asyncio()
    async def test_queue_until_window_rolls(self, fake_sleep: RecordingSleep) -> None:
        backend = Backend()
        pipe = make_pipe(
            backend, fake_sleep, rate_limit={"requests": 1, "per": "2s", "retry_after": True}
        )
        await pipe.get("/a")
        await pipe.get("/b")
        assert fake_sleep.delays == [2.0]
        assert len(backend.requests) == 2

    @pytest.mark.asyncio()
    async def test_window_resets_with_clock(
        self, fake_sleep: RecordingSleep, clock: FakeClock
    ) -> None:
        limiter = FixedWindowLimiter(1, 1.0, clock=clock, sleep=fake_sleep)
        await limiter.acquire()
        clock.advance(1.0)
        await limiter.acquire()
        assert fake_sleep.delays == []
