"""Tests for the pipe manager and the TCP, MQTT, database and file pipes."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from flowbot.errors import PipeError, PipeNotFoundError, PipeUnavailable
from flowbot.pipes.base import ConnectionState
from flowbot.pipes.database import DatabasePipe
from flowbot.pipes.file import FileWatchPipe
from flowbot.pipes.http import HttpPipe
from flowbot.pipes.manager import PipeManager
from flowbot.pipes.mqtt import MqttPipe, topic_matches
from flowbot.pipes.tcp import TcpPipe, decode_frame, encode_frame
from flowbot.pipes.webhook import WebhookPipe, sign_payload
from flowbot.spec.models import PipeDefinition

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Collector:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, Any]] = []
        self.received = asyncio.Event()

    async def __call__(self, pipe: Any, event: str, data: Any) -> None:
        self.events.append((pipe.name, event, data))
        self.received.set()


class FakeMqttMessage:
    def __init__(self, topic: str, payload: bytes) -> None:
        self.topic = topic
        self.payload = payload


class FakeMqttClient:
    instances: list[FakeMqttClient] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.subscribed: list[tuple[str, int]] = []
        self.published: list[tuple[str, Any, int, bool]] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.entered = False
        FakeMqttClient.instances.append(self)

    async def __aenter__(self) -> FakeMqttClient:
        self.entered = True
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.entered = False

    async def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscribed.append((topic, qos))

    async def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> None:
        self.published.append((topic, payload, qos, retain))

    @property
    def messages(self) -> FakeMqttClient:
        return self

    def __aiter__(self) -> FakeMqttClient:
        return self

    async def __anext__(self) -> FakeMqttMessage:
        message = await self.inbox.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeObserver:
    def __init__(self) -> None:
        self.scheduled: list[tuple[Any, str, bool]] = []
        self.running = False

    def schedule(self, handler: Any, path: str, recursive: bool = False) -> None:
        self.scheduled.append((handler, path, recursive))

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def join(self, timeout: float | None = None) -> None:
        pass


class FakeFsEvent:
    def __init__(self, event_type: str, src_path: str, is_directory: bool = False) -> None:
        self.event_type = event_type
        self.src_path = src_path
        self.is_directory = is_directory


# ===========================================================================
# Manager
# ===========================================================================


class TestPipeManager:
    def test_load_creates_typed_pipes(self) -> None:
        manager = PipeManager()
        manager.load(
            [
                PipeDefinition(name="api", type="http", base_url="https://x.test"),
                PipeDefinition(name="hook", type="webhook", path="/hook"),
            ]
        )
        assert isinstance(manager.get("api"), HttpPipe)
        assert isinstance(manager.get("hook"), WebhookPipe)
        assert manager.names() == ["api", "hook"]
        assert manager.definition("hook").options == {"path": "/hook"}

    def test_unknown_pipe(self) -> None:
        with pytest.raises(PipeNotFoundError):
            PipeManager().get("ghost")

    @pytest.mark.asyncio()
    async def test_connect_all_respects_auto_connect(self) -> None:
        manager = PipeManager()
        manager.load(
            [
                PipeDefinition(name="hook", type="webhook"),
                PipeDefinition(name="later", type="webhook", auto_connect=False),
            ]
        )
        assert await manager.connect_all() == {"hook": True}
        assert manager.get("later").state == ConnectionState.DISCONNECTED
        statuses = {s["name"]: s["state"] for s in manager.status()}
        assert statuses == {"hook": "connected", "later": "disconnected"}
        await manager.disconnect_all()

    @pytest.mark.asyncio()
    async def test_connect_all_reports_failures(self, tmp_path: Path) -> None:
        manager = PipeManager()
        # A directory is not a database file
        manager.load([PipeDefinition(name="db", type="database", database=str(tmp_path))])
        assert await manager.connect_all() == {"db": False}

    @pytest.mark.asyncio()
    async def test_webhook_routing_uses_sink(self) -> None:
        collector = Collector()
        manager = PipeManager(collector)
        manager.load(
            [
                PipeDefinition(
                    name="hook",
                    type="webhook",
                    path="/hook",
                    verification={"type": "hmac", "secret": "x"},
                )
            ]
        )
        body = b'{"n": 1}'
        ok = await manager.handle_webhook("/hook", body, {"X-Signature": sign_payload(body, "x")})
        missing = await manager.handle_webhook("/other", body, {})
        assert ok.status == 200
        assert missing.status == 404
        assert collector.events == [("hook", "message", {"n": 1})]

    @pytest.mark.asyncio()
    async def test_request_needs_http_pipe(self) -> None:
        manager = PipeManager()
        manager.load([PipeDefinition(name="hook", type="webhook")])
        with pytest.raises(PipeError, match="not an HTTP pipe"):
            await manager.request("hook")

    @pytest.mark.asyncio()
    async def test_remove(self) -> None:
        manager = PipeManager()
        manager.load([PipeDefinition(name="hook", type="webhook")])
        assert await manager.remove("hook") is True
        assert await manager.remove("hook") is False
        assert not manager.has("hook")


# ===========================================================================
# TCP
# ===========================================================================


class TestTcp:
    def test_frame_codecs(self) -> None:
        assert encode_frame({"a": 1}, "text") == b'{"a": 1}'
        assert encode_frame("00ff", "hex") == b"\x00\xff"
        assert decode_frame(b"\x00\xff", "hex") == "00ff"
        assert decode_frame(b"aGk=", "text") == "aGk="
        assert decode_frame(b"hi", "base64") == "aGk="
        assert decode_frame(b'{"x": 2}', "json") == {"x": 2}
        assert decode_frame(b"not json", "json") == "not json"

    def test_unknown_encoding(self) -> None:
        with pytest.raises(ValueError):
            TcpPipe("t", {"encoding": "morse"})

    @pytest.mark.asyncio()
    async def test_echo_server(self) -> None:
        async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            line = await reader.readline()
            writer.write(line.upper())
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(echo, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        collector = Collector()
        pipe = TcpPipe(
            "echo",
            {"host": "127.0.0.1", "port": port, "reconnect": {"max_attempts": 1}},
            collector,
        )
        try:
            assert await pipe.connect() is True
            await pipe.send("ping")
            await asyncio.wait_for(collector.received.wait(), 2)
            assert collector.events[0] == ("echo", "message", "PING")
        finally:
            await pipe.disconnect()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio()
    async def test_unreachable_host_fails(self) -> None:
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        pipe = TcpPipe("dead", {"port": port, "reconnect": {"max_attempts": 1}})
        assert await pipe.connect() is False
        assert pipe.state == ConnectionState.FAILED
        with pytest.raises(PipeUnavailable):
            await pipe.send("x")


# ===========================================================================
# MQTT
# ===========================================================================


class TestMqtt:
    @pytest.mark.parametrize(
        ("pattern", "topic", "expected"),
        [
            ("sensors/+/temp", "sensors/kitchen/temp", True),
            ("sensors/+/temp", "sensors/kitchen/humidity", False),
            ("sensors/#", "sensors/a/b/c", True),
            ("sensors/#", "sensors", False),
            ("a/b", "a/b/c", False),
            ("a/b", "a/b", True),
        ],
    )
    def test_topic_matches(self, pattern: str, topic: str, expected: bool) -> None:
        assert topic_matches(pattern, topic) is expected

    @pytest.mark.asyncio()
    async def test_subscribe_publish_and_receive(self) -> None:
        FakeMqttClient.instances.clear()
        collector = Collector()
        pipe = MqttPipe(
            "home",
            {
                "broker": "mqtt://user:pw@broker.test:1884",
                "topics": ["sensors/#", {"topic": "alerts", "qos": 1}],
            },
            collector,
            client_factory=FakeMqttClient,
        )
        assert await pipe.connect() is True
        client = FakeMqttClient.instances[0]
        assert client.kwargs["hostname"] == "broker.test"
        assert client.kwargs["port"] == 1884
        assert client.kwargs["username"] == "user"
        assert client.subscribed == [("sensors/#", 0), ("alerts", 1)]

        await pipe.send({"on": True}, topic="lights/set", qos=1)
        assert client.published == [("lights/set", '{"on": true}', 1, False)]

        await client.inbox.put(FakeMqttMessage("sensors/kitchen/temp", b'{"c": 21}'))
        await asyncio.wait_for(collector.received.wait(), 1)
        assert collector.events == [
            (
                "home",
                "sensors/kitchen/temp",
                {"topic": "sensors/kitchen/temp", "payload": {"c": 21}},
            )
        ]
        assert pipe.matches("sensors/+/temp", "sensors/kitchen/temp")
        assert pipe.matches("message", "anything/at/all")

        await pipe.disconnect()
        assert client.entered is False

    @pytest.mark.asyncio()
    async def test_publish_needs_topic(self) -> None:
        pipe = MqttPipe("m", {}, client_factory=FakeMqttClient)
        await pipe.connect()
        with pytest.raises(ValueError, match="needs a topic"):
            await pipe.send("x")
        await pipe.disconnect()


# ===========================================================================
# Database
# ===========================================================================


class TestDatabase:
    @pytest.mark.asyncio()
    async def test_named_queries(self, tmp_path: Path) -> None:
        pipe = DatabasePipe(
            "db",
            {
                "driver": "sqlite",
                "database": str(tmp_path / "bot.db"),
                "queries": {
                    "add": {
                        "sql": "INSERT INTO scores (name, points) VALUES (?, ?)",
                        "parameters": ["name", "points"],
                    },
                    "top": "SELECT name, points FROM scores ORDER BY points DESC",
                },
            },
        )
        await pipe.connect()
        await pipe.execute_sql("CREATE TABLE scores (name TEXT, points INTEGER)")
        assert await pipe.query("add", {"points": 5, "name": "a"}) == {"rowcount": 1}
        await pipe.query("add", ["b", 9])
        assert await pipe.send("top") == [
            {"name": "b", "points": 9},
            {"name": "a", "points": 5},
        ]
        await pipe.disconnect()

    @pytest.mark.asyncio()
    async def test_unknown_query(self) -> None:
        pipe = DatabasePipe("db", {})
        await pipe.connect()
        with pytest.raises(PipeError, match="Unknown query"):
            await pipe.query("nope")
        await pipe.disconnect()

    @pytest.mark.asyncio()
    async def test_requires_connection(self) -> None:
        with pytest.raises(PipeUnavailable):
            await DatabasePipe("db", {}).execute_sql("SELECT 1")

    def test_unsupported_driver(self) -> None:
        with pytest.raises(ValueError, match="Unsupported database driver"):
            DatabasePipe("db", {"driver": "oracle"})


# ===========================================================================
# File watch
# ===========================================================================


class TestFileWatch:
    @pytest.mark.asyncio()
    async def test_bridges_filesystem_events(self, tmp_path: Path) -> None:
        observer = FakeObserver()
        collector = Collector()
        pipe = FileWatchPipe(
            "files",
            {"paths": str(tmp_path), "events": ["created"], "ignore": ["*.tmp"]},
            collector,
            observer_factory=lambda: observer,
        )
        await pipe.connect()
        assert observer.running is True
        handler, path, recursive = observer.scheduled[0]
        assert path == str(tmp_path)
        assert recursive is True

        handler.dispatch(FakeFsEvent("created", str(tmp_path / "skip.tmp")))
        handler.dispatch(FakeFsEvent("modified", str(tmp_path / "a.txt")))
        handler.dispatch(FakeFsEvent("created", str(tmp_path / "sub"), is_directory=True))
        handler.dispatch(FakeFsEvent("created", str(tmp_path / "a.txt")))
        await asyncio.wait_for(collector.received.wait(), 1)

        assert collector.events == [
            ("files", "created", {"type": "created", "path": str(tmp_path / "a.txt")})
        ]
        await pipe.disconnect()
        assert observer.running is False

    @pytest.mark.asyncio()
    async def test_send_is_unsupported(self) -> None:
        with pytest.raises(PipeError, match="inbound only"):
            await FileWatchPipe("files", {}).send("x")
