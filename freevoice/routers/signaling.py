"""WebSocket endpoint for the signaling relay."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..services.relay import SignalingRelay
from ..services.rooms import RoomRegistry, SignalingConnection

logger = logging.getLogger(__name__)

router = APIRouter()

relay = SignalingRelay(RoomRegistry(capacity=settings.room_capacity))


@router.websocket("/")
@router.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Serve one signaling connection until the client goes away."""

    await websocket.accept()
    connection = SignalingConnection(connection_id=str(uuid4()), send=websocket.send_json)
    logger.info("New signaling connection %s", connection.connection_id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            frame = message.get("text")
            if frame is None:
                logger.debug("Dropping binary frame from %s", connection.connection_id)
                continue
            try:
                payload = json.loads(frame)
            except json.JSONDecodeError:
                logger.debug("Dropping non-JSON frame from %s", connection.connection_id)
                continue
            await relay.handle(connection, payload)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(connection)
        logger.info("Signaling connection %s closed", connection.connection_id)
