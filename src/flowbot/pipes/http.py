"""HTTP pipe — authenticated, rate-limited and retried requests over httpx."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from flowbot.errors import RateLimitExceeded
from flowbot.pipes.base import ConnectionState, Pipe, PipeResponse, PipeSink, Sleep
from flowbot.utils.duration import parse_duration

logger = logging.getLogger(__name__)


class FixedWindowLimiter:
    """``requests`` calls per ``per`` seconds.

    When ``wait`` is set, callers over the limit are queued until the window
    rolls over; otherwise they fail fast with :class:`RateLimitExceeded`.
    """

    def __init__(
        self,
        requests: int,
        per: float,
        *,
        wait: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.requests = requests
        self.per = per
        self.wait = wait
        self._clock = clock
        self._sleep = sleep
        self._window_start = clock()
        self._count = 0
        self._lock = asyncio.Lock()

    def _roll(self) -> float:
        now = self._clock()
        elapsed = now - self._window_start
        if elapsed >= self.per:
            self._window_start = now
            self._count = 0
            elapsed = 0.0
        return max(self.per - elapsed, 0.0)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                remaining = self._roll()
                if self._count < self.requests:
                    self._count += 1
                    return
                if not self.wait:
                    raise RateLimitExceeded(
                        f"Rate limit of {self.requests} per {self.per:g}s exceeded",
                        retry_after=remaining,
                    )
                logger.debug("Rate limit reached, waiting %.2fs", remaining)
                await self._sleep(remaining)
                # Force the next window even when the sleep is faked
                self._window_start -= self.per


class HttpPipe(Pipe):
    """Stateless HTTP connector. Always reports connected."""

    kind = "http"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name, config, sink)
        self.base_url = (config.get("base_url") or config.get("url") or "").rstrip("/")
        self.headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        self.timeout = parse_duration(config.get("timeout"), default=30.0)
        retry = config.get("retry") or {}
        self.retry_attempts = int(retry.get("attempts", 0))
        self.retry_delay = parse_duration(retry.get("delay"), default=1.0)
        self._sleep = sleep
        self._client = client
        self._owns_client = client is None
        self.limiter: FixedWindowLimiter | None = None
        rate = config.get("rate_limit")
        if rate:
            self.limiter = FixedWindowLimiter(
                int(rate.get("requests", 1)),
                parse_duration(rate.get("per"), default=1.0),
                wait=bool(rate.get("retry_after", False)),
                clock=clock,
                sleep=sleep,
            )

    def is_connected(self) -> bool:
        return True

    def _auth(self) -> tuple[dict[str, str], httpx.Auth | None]:
        auth = self.config.get("auth") or {}
        kind = auth.get("type", "none")
        if kind == "bearer":
            return {"Authorization": f"Bearer {auth.get('token', '')}"}, None
        if kind == "header":
            header = auth.get("header_name") or auth.get("header") or "Authorization"
            return {header: str(auth.get("token", ""))}, None
        if kind == "basic":
            return {}, httpx.BasicAuth(auth.get("username", ""), auth.get("password", ""))
        return {}, None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def connect(self) -> bool:
        if self._state != ConnectionState.CONNECTED:
            self._transition(ConnectionState.CONNECTING)
            self._get_client()
            self._transition(ConnectionState.CONNECTED)
        return True

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._transition(ConnectionState.DISCONNECTED)

    async def request(
        self,
        method: str = "GET",
        path: str = "",
        body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> PipeResponse:
        """Send one request.

        Network errors and 5xx responses are retried ``retry.attempts`` times
        with a fixed delay; everything else is returned as-is.

        Raises:
            RateLimitExceeded: When the rate limit is hit and queuing is off.
        """
        if self.limiter is not None:
            await self.limiter.acquire()

        client = self._get_client()
        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}{path}"
        auth_headers, auth = self._auth()
        merged = {**self.headers, **auth_headers, **(headers or {})}

        attempt = 0
        while True:
            try:
                response = await client.request(
                    method.upper(),
                    url,
                    json=body if body is not None and not isinstance(body, str | bytes) else None,
                    content=body if isinstance(body, str | bytes) else None,
                    params=params,
                    headers=merged,
                    auth=auth if auth is not None else httpx.USE_CLIENT_DEFAULT,
                )
            except httpx.RequestError as exc:
                if attempt < self.retry_attempts:
                    attempt += 1
                    logger.warning(
                        "HTTP pipe %s: %s (retry %d/%d)",
                        self.name,
                        exc,
                        attempt,
                        self.retry_attempts,
                    )
                    await self._sleep(self.retry_delay)
                    continue
                self.last_error = str(exc)
                logger.warning("HTTP pipe %s request failed: %s", self.name, exc)
                return PipeResponse(success=False, error=str(exc))

            if response.status_code >= 500 and attempt < self.retry_attempts:
                attempt += 1
                logger.warning(
                    "HTTP pipe %s got %d (retry %d/%d)",
                    self.name,
                    response.status_code,
                    attempt,
                    self.retry_attempts,
                )
                await self._sleep(self.retry_delay)
                continue
            return self._to_response(response)

    def _to_response(self, response: httpx.Response) -> PipeResponse:
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        success = response.is_success
        error = None if success else f"HTTP {response.status_code}"
        if not success:
            self.last_error = error
        return PipeResponse(
            success=success,
            data=data,
            error=error,
            status=response.status_code,
            headers=dict(response.headers),
        )

    async def get(self, path: str = "", **kwargs: Any) -> PipeResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str = "", body: Any = None, **kwargs: Any) -> PipeResponse:
        return await self.request("POST", path, body, **kwargs)

    async def put(self, path: str = "", body: Any = None, **kwargs: Any) -> PipeResponse:
        return await self.request("PUT", path, body, **kwargs)

    async def patch(self, path: str = "", body: Any = None, **kwargs: Any) -> PipeResponse:
        return await self.request("PATCH", path, body, **kwargs)

    async def delete(self, path: str = "", **kwargs: Any) -> PipeResponse:
        return await self.request("DELETE", path, **kwargs)

    async def send(self, data: Any, **options: Any) -> PipeResponse:
        """POST *data* (or ``options['method']``) to ``options['path']``."""
        return await self.request(
            options.get("method", "POST"),
            options.get("path", ""),
            data,
            params=options.get("params"),
            headers=options.get("headers"),
        )
