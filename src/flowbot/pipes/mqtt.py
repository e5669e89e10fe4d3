"""MQTT pipe on aiomqtt (optional ``pipes`` extra)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import urlparse

from flowbot.pipes.base import PipeSink, ReconnectingPipe, Sleep

logger = logging.getLogger(__name__)


def topic_matches(pattern: str, topic: str) -> bool:
    """MQTT filter matching: ``+`` is one level, a trailing ``#`` is the rest."""
    pattern_parts = pattern.split("/")
    topic_parts = topic.split("/")
    for index, part in enumerate(pattern_parts):
        if part == "#":
            return index == len(pattern_parts) - 1
        if index >= len(topic_parts):
            return False
        if part != "+" and part != topic_parts[index]:
            return False
    return len(pattern_parts) == len(topic_parts)


class MqttPipe(ReconnectingPipe):
    """Broker client.

    Config: ``broker`` (``mqtt://host:port``), optional ``username`` /
    ``password`` / ``client_id``, and ``topics`` as strings or
    ``{topic, qos}`` mappings. Inbound messages are emitted with the topic
    as the event name; handlers may register topic filters.
    """

    kind = "mqtt"

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        sink: PipeSink | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        client_factory: Any = None,
    ) -> None:
        super().__init__(name, config, sink, sleep=sleep)
        broker = urlparse(config.get("broker") or "mqtt://localhost:1883")
        self.hostname = broker.hostname or "localhost"
        self.port = broker.port or (8883 if broker.scheme == "mqtts" else 1883)
        self.username = config.get("username") or broker.username
        self.password = config.get("password") or broker.password
        self.client_id = config.get("client_id")
        self.subscriptions: list[tuple[str, int]] = []
        for entry in config.get("topics") or []:
            if isinstance(entry, str):
                self.subscriptions.append((entry, int(config.get("qos", 0))))
            else:
                self.subscriptions.append((entry["topic"], int(entry.get("qos", 0))))
        self._client_factory = client_factory
        self._client: Any = None

    def _factory(self) -> Any:
        if self._client_factory is None:
            import aiomqtt

            self._client_factory = aiomqtt.Client
        return self._client_factory

    async def _open(self) -> None:
        client = self._factory()(
            hostname=self.hostname,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=self.client_id,
        )
        await client.__aenter__()
        self._client = client
        for topic, qos in self.subscriptions:
            await client.subscribe(topic, qos=qos)
            logger.debug("MQTT pipe %s subscribed to %s (qos %d)", self.name, topic, qos)

    async def _close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.__aexit__(None, None, None)

    async def _write(self, data: Any, **options: Any) -> None:
        topic = options.get("topic") or self.config.get("default_topic")
        if not topic:
            raise ValueError(f"MQTT pipe '{self.name}' needs a topic to publish")
        await self.publish(
            topic,
            data,
            qos=int(options.get("qos", 0)),
            retain=bool(options.get("retain", False)),
        )

    async def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> None:
        if not isinstance(payload, str | bytes | int | float) or isinstance(payload, bool):
            payload = json.dumps(payload, default=str)
        await self._client.publish(topic, payload, qos=qos, retain=retain)

    async def _read(self) -> None:
        async for message in self._client.messages:
            raw = message.payload
            text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            try:
                payload: Any = json.loads(text) if isinstance(text, str) else text
            except ValueError:
                payload = text
            topic = str(message.topic)
            await self.emit(topic, {"topic": topic, "payload": payload})

    def matches(self, pattern: str, event: str) -> bool:
        return pattern in ("message", "*") or topic_matches(pattern, event)
