"""Participant-side signaling connection with linear-backoff reconnects."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.config import settings
from ..schemas.signaling import SignalingModel, parse_frame

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None]]
StateHandler = Callable[["ConnectionState"], None]
SleepCallable = Callable[[float], Awaitable[None]]

_CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class SignalingConnectionError(RuntimeError):
    """Raised when the initial connection to the relay cannot be opened."""


class SignalingClient:
    """Own one relay connection, its read loop and its reconnect task."""

    def __init__(
        self,
        url: str | None = None,
        *,
        base_delay: float | None = None,
        max_attempts: int | None = None,
        on_state_change: StateHandler | None = None,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self.url = url or settings.signaling_url
        self.base_delay = settings.reconnect_base_delay if base_delay is None else base_delay
        self.max_attempts = settings.max_reconnect_attempts if max_attempts is None else max_attempts
        self.on_state_change = on_state_change
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self._sleep = sleep
        self._ws: Any = None
        self._handlers: Dict[str, MessageHandler] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def on(self, message_type: str, handler: MessageHandler) -> None:
        """Register the handler for one message type, replacing any previous one."""

        self._handlers[message_type] = handler

    async def connect(self, url: str | None = None) -> None:
        """Open the relay connection; only this first attempt raises on failure."""

        if url:
            self.url = url
        await self._shutdown()
        self._stopped = False
        self.attempts = 0
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(self.url)
        except _CONNECT_ERRORS as exc:
            self._set_state(ConnectionState.DISCONNECTED)
            raise SignalingConnectionError(f"Failed to connect to signaling server at {self.url}") from exc

        logger.info("Connected to signaling server %s", self.url)
        self._attach(ws)

    async def send(self, message: SignalingModel | dict) -> bool:
        """Send a frame without waiting for any reply.

        Returns ``False`` (and logs) when the connection is not usable.
        """

        payload = message.to_wire() if isinstance(message, SignalingModel) else message
        if self.state is not ConnectionState.CONNECTED or self._ws is None:
            logger.warning(
                "Cannot send %s - signaling not connected (%s)", payload.get("type"), self.state.value
            )
            return False

        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as exc:
            logger.warning("Signaling connection closed while sending %s: %s", payload.get("type"), exc)
            return False
        return True

    async def close(self) -> None:
        """Stop for good: cancel reconnects and the read loop, close the socket."""

        self._stopped = True
        await self._shutdown()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _shutdown(self) -> None:
        """Cancel the reconnect and read tasks and close the current socket."""

        current = asyncio.current_task()
        tasks = [task for task in (self._reconnect_task, self._reader_task) if task is not None and task is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        self._reader_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    def _attach(self, ws: Any) -> None:
        self._ws = ws
        self.attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self._reader_task = asyncio.create_task(self._receive_loop(ws))

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for frame in ws:
                if isinstance(frame, bytes):
                    continue
                await self._dispatch(frame)
        except ConnectionClosed as exc:
            logger.debug("Signaling connection closed: %s", exc)

        if self._stopped or self._ws is not ws:
            return

        logger.warning("Disconnected from signaling server")
        self._ws = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _dispatch(self, frame: str) -> None:
        try:
            message = parse_frame(frame)
        except ValidationError as exc:
            logger.debug("Ignoring unrecognised signaling frame: %s", exc)
            return

        logger.debug("Received signaling message: %s", message.type)
        handler = self._handlers.get(message.type)
        if handler is None:
            return
        try:
            await handler(message)
        except Exception:  # noqa: BLE001 - one bad message must not kill the read loop
            logger.exception("Handler for %s message failed", message.type)

    async def _reconnect(self) -> None:
        while self.attempts < self.max_attempts:
            self.attempts += 1
            delay = self.base_delay * self.attempts
            logger.info("Attempting to reconnect (%d/%d) in %.1fs", self.attempts, self.max_attempts, delay)
            self._set_state(ConnectionState.RECONNECTING)
            await self._sleep(delay)
            try:
                ws = await websockets.connect(self.url)
            except _CONNECT_ERRORS as exc:
                logger.warning("Reconnect attempt %d failed: %s", self.attempts, exc)
                continue

            logger.info("Reconnected to signaling server after %d attempt(s)", self.attempts)
            self._reconnect_task = None
            self._attach(ws)
            return

        logger.error("Max reconnection attempts reached")
        self._reconnect_task = None
        self._set_state(ConnectionState.FAILED)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception:  # noqa: BLE001 - observer errors stay with the observer
                logger.exception("Signaling state listener failed")
