"""Tests for the participant-side signaling client."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from freevoice.schemas.signaling import ChatMessage, JoinMessage
from freevoice.services import signaling_client
from freevoice.services.signaling_client import ConnectionState, SignalingClient, SignalingConnectionError

_DROP = object()


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._messages: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str | bytes:
        item = await self._messages.get()
        if item is _DROP:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def queue_message(self, payload: dict | bytes) -> None:
        self._messages.put_nowait(payload if isinstance(payload, bytes) else json.dumps(payload))

    def drop(self) -> None:
        self._messages.put_nowait(_DROP)


class DummyConnector:
    """Hand out scripted sockets or failures, one per ``connect`` call."""

    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    async def connect(self, url: str, **kwargs) -> DummyWebSocket:
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome  # type: ignore[return-value]


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def wait_until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _install(monkeypatch, connector: DummyConnector) -> None:
    monkeypatch.setattr(signaling_client, "websockets", SimpleNamespace(connect=connector.connect))


@pytest.mark.asyncio
async def test_first_connect_failure_raises(monkeypatch):
    _install(monkeypatch, DummyConnector(OSError("refused")))
    states: list[ConnectionState] = []
    client = SignalingClient("ws://relay", on_state_change=states.append)

    with pytest.raises(SignalingConnectionError):
        await client.connect()

    assert client.state is ConnectionState.DISCONNECTED
    assert states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]


@pytest.mark.asyncio
async def test_send_is_noop_when_not_connected():
    client = SignalingClient("ws://relay")

    assert await client.send(ChatMessage(text="hi")) is False
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_send_serializes_wire_names(monkeypatch):
    ws = DummyWebSocket()
    _install(monkeypatch, DummyConnector(ws))
    client = SignalingClient("ws://relay")
    await client.connect()

    assert await client.send(JoinMessage(room="R1", stream_id="P1", role="director")) is True

    assert json.loads(ws.sent[0]) == {"type": "join", "room": "R1", "streamId": "P1", "role": "director"}
    await client.close()


@pytest.mark.asyncio
async def test_dispatch_routes_by_type_and_ignores_unknown(monkeypatch):
    ws = DummyWebSocket()
    _install(monkeypatch, DummyConnector(ws))
    client = SignalingClient("ws://relay")
    received: list[object] = []

    async def on_chat(message) -> None:
        received.append(message)

    async def on_joined(message) -> None:
        raise RuntimeError("handler bug")

    client.on("chat", on_chat)
    client.on("joined", on_joined)
    await client.connect()

    ws.queue_message({"type": "mystery", "value": 1})
    ws.queue_message(b"\x00binary")
    ws.queue_message({"type": "joined", "room": "R1", "peerId": "P1"})
    ws.queue_message({"type": "chat", "text": "hello", "from": "P2", "timestamp": 5})
    await wait_until(lambda: received)

    assert len(received) == 1
    assert isinstance(received[0], ChatMessage)
    assert received[0].from_ == "P2"
    assert client.state is ConnectionState.CONNECTED
    await client.close()


@pytest.mark.asyncio
async def test_reconnect_uses_linear_backoff_then_fails(monkeypatch):
    ws = DummyWebSocket()
    connector = DummyConnector(ws)
    _install(monkeypatch, connector)
    sleep = SleepRecorder()
    states: list[ConnectionState] = []
    client = SignalingClient(
        "ws://relay", base_delay=2.0, max_attempts=5, on_state_change=states.append, sleep=sleep
    )
    await client.connect()

    ws.drop()
    await wait_until(lambda: client.state is ConnectionState.FAILED)

    assert sleep.delays == [2.0, 4.0, 6.0, 8.0, 10.0]
    assert len(connector.urls) == 6
    assert client.attempts == 5
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.FAILED,
    ]
    assert await client.send(ChatMessage(text="late")) is False

    for _ in range(10):
        await asyncio.sleep(0)
    assert len(connector.urls) == 6


@pytest.mark.asyncio
async def test_successful_reconnect_resets_attempts(monkeypatch):
    first, second = DummyWebSocket(), DummyWebSocket()
    connector = DummyConnector(first, OSError("refused"), second)
    _install(monkeypatch, connector)
    sleep = SleepRecorder()
    client = SignalingClient("ws://relay", base_delay=1.5, max_attempts=5, sleep=sleep)
    await client.connect()

    first.drop()
    await wait_until(lambda: client.connected and client._ws is second)

    assert sleep.delays == [1.5, 3.0]
    assert client.attempts == 0
    assert await client.send(ChatMessage(text="back")) is True
    assert json.loads(second.sent[0])["text"] == "back"
    await client.close()


@pytest.mark.asyncio
async def test_close_stops_without_reconnecting(monkeypatch):
    ws = DummyWebSocket()
    connector = DummyConnector(ws)
    _install(monkeypatch, connector)
    sleep = SleepRecorder()
    client = SignalingClient("ws://relay", sleep=sleep)
    await client.connect()

    await client.close()
    for _ in range(10):
        await asyncio.sleep(0)

    assert ws.closed
    assert client.state is ConnectionState.DISCONNECTED
    assert sleep.delays == []
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_connect_while_reconnecting_replaces_pending_reconnect(monkeypatch):
    first, second, third = DummyWebSocket(), DummyWebSocket(), DummyWebSocket()
    connector = DummyConnector(first, second, third)
    _install(monkeypatch, connector)
    gate = asyncio.Event()

    async def gated_sleep(delay: float) -> None:
        await gate.wait()

    client = SignalingClient("ws://relay", base_delay=1.0, max_attempts=5, sleep=gated_sleep)
    await client.connect()
    first.drop()
    await wait_until(lambda: client.state is ConnectionState.RECONNECTING)

    await client.connect()
    gate.set()
    for _ in range(10):
        await asyncio.sleep(0)

    assert client._ws is second
    assert client.connected
    assert len(connector.urls) == 2

    await client.close()
    assert second.closed
