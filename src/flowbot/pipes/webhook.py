"""Inbound webhook pipe — verified HTTP callbacks turned into pipe events."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from flowbot.errors import PipeError, VerificationError
from flowbot.pipes.base import ConnectionState, Pipe, PipeResponse, PipeSink

logger = logging.getLogger(__name__)

ALGORITHMS: dict[str, Callable[..., Any]] = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

DEFAULT_HEADERS = {
    "hmac": "X-Signature",
    "signature": "X-Signature",
    "token": "X-Webhook-Token",
}


def sign_payload(
    body: bytes,
    secret: str,
    algorithm: str = "sha256",
    *,
    encoding: str = "hex",
) -> str:
    """HMAC of *body*; hex digest by default, base64 when ``encoding='base64'``."""
    digest = hmac.new(secret.encode(), body, ALGORITHMS[algorithm])
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


class WebhookPipe(Pipe):
    """Receives POSTs on ``path`` and emits them after verification.

    ``verification`` config: ``type`` (hmac | signature | token), ``secret``,
    ``header`` and ``algorithm`` (sha1 | sha256 | sha512). Requests failing
    verification are logged and answered with 401; nothing is emitted.
    """

    kind = "webhook"

    def __init__(self, name: str, config: dict[str, Any], sink: PipeSink | None = None) -> None:
        super().__init__(name, config, sink)
        path = config.get("path") or f"/webhooks/{name}"
        self.path = path if path.startswith("/") else f"/{path}"
        self.method = str(config.get("method", "POST")).upper()
        self.verification: dict[str, Any] = dict(config.get("verification") or {})
        algorithm = self.verification.get("algorithm", "sha256")
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unsupported webhook algorithm '{algorithm}'")

    async def connect(self) -> bool:
        # Nothing to open; the HTTP server owns the socket
        if self._state != ConnectionState.CONNECTED:
            self._transition(ConnectionState.CONNECTING)
            self._transition(ConnectionState.CONNECTED)
        return True

    async def disconnect(self) -> None:
        self._transition(ConnectionState.DISCONNECTED)

    async def send(self, data: Any, **options: Any) -> Any:
        raise PipeError(f"Webhook pipe '{self.name}' is inbound only", {"pipe": self.name})

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        """Check the request against the configured secret.

        Raises:
            VerificationError: If the header is missing or does not match.
        """
        kind = self.verification.get("type")
        if not kind:
            return
        secret = str(self.verification.get("secret", ""))
        header = self.verification.get("header") or DEFAULT_HEADERS.get(kind, "X-Signature")
        lowered = {k.lower(): v for k, v in headers.items()}
        provided = lowered.get(header.lower())
        if not provided:
            raise VerificationError(f"Missing {header} header", {"pipe": self.name})

        algorithm = self.verification.get("algorithm", "sha256")
        if kind == "token":
            expected = secret
        elif kind == "signature":
            expected = sign_payload(body, secret, algorithm, encoding="base64")
        elif kind == "hmac":
            expected = sign_payload(body, secret, algorithm)
            # Tolerate GitHub style "sha256=<hex>"
            prefix = f"{algorithm}="
            if provided.startswith(prefix):
                provided = provided[len(prefix) :]
        else:
            raise VerificationError(f"Unknown verification type '{kind}'", {"pipe": self.name})

        if not hmac.compare_digest(provided.encode(), expected.encode()):
            raise VerificationError("Invalid webhook signature", {"pipe": self.name})

    async def handle_request(self, body: bytes, headers: Mapping[str, str]) -> PipeResponse:
        """Verify, decode and emit one inbound request."""
        try:
            self.verify(body, headers)
        except VerificationError as exc:
            logger.warning("Webhook %s rejected: %s", self.name, exc.message)
            self.last_error = exc.message
            return PipeResponse(success=False, error=exc.message, status=401)

        try:
            payload: Any = json.loads(body) if body else {}
        except ValueError:
            payload = body.decode("utf-8", errors="replace")
        event = "message"
        if isinstance(payload, dict) and isinstance(payload.get("event"), str):
            event = payload["event"]
        await self.emit(event, payload)
        return PipeResponse(success=True, data={"status": "received"}, status=200)


def build_webhook_router(
    pipes: Callable[[], list[WebhookPipe]], prefix: str = ""
) -> APIRouter:
    """One route per webhook pipe, resolved per request so pipe changes apply live."""
    prefix = prefix.rstrip("/")
    router = APIRouter()

    async def _receive(request: Request) -> JSONResponse:
        path = request.url.path
        pipe = next((p for p in pipes() if prefix + p.path == path), None)
        if pipe is None or request.method != pipe.method:
            return JSONResponse({"error": "Not found"}, status_code=404)
        result = await pipe.handle_request(await request.body(), dict(request.headers))
        content = result.data if result.success else {"error": result.error}
        return JSONResponse(content, status_code=result.status or 200)

    for pipe in pipes():
        router.add_api_route(prefix + pipe.path, _receive, methods=[pipe.method], name=pipe.name)
    return router
