"""Signaling relay: routes join/leave and negotiation frames between room members."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from pydantic import ValidationError

from ..schemas.signaling import (
    RELAYED_TYPES,
    ROOM_FULL,
    ErrorMessage,
    JoinedMessage,
    JoinMessage,
    LeaveMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    parse_message,
)
from .rooms import Departure, Member, RoomFullError, RoomRegistry, SignalingConnection

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Content-agnostic router for one process worth of rooms."""

    def __init__(self, registry: RoomRegistry | None = None) -> None:
        self.registry = registry or RoomRegistry()

    async def handle(self, connection: SignalingConnection, payload: Any) -> None:
        """Process a single decoded frame from ``connection``."""

        if not isinstance(payload, dict):
            logger.debug("Dropping non-object frame from %s", connection.connection_id)
            return

        message_type = payload.get("type")
        if message_type in RELAYED_TYPES:
            await self._relay(connection, payload)
            return

        try:
            message = parse_message(payload)
        except ValidationError as exc:
            logger.debug("Dropping malformed frame from %s: %s", connection.connection_id, exc)
            return

        if isinstance(message, JoinMessage):
            await self._join(connection, message)
        elif isinstance(message, LeaveMessage):
            await self.disconnect(connection)
        else:
            logger.debug("Ignoring client-sent %s frame from %s", message.type, connection.connection_id)

    async def disconnect(self, connection: SignalingConnection) -> Departure | None:
        """Remove the connection from its room and notify the remaining members."""

        departure = self.registry.leave(connection)
        if departure is None:
            return None

        await self._announce_departure(connection, departure)
        return departure

    async def _announce_departure(self, connection: SignalingConnection, departure: Departure) -> None:
        logger.info("Participant %s left room %s", departure.participant_id, departure.room)
        if departure.room_empty:
            logger.info("Room %s is empty and was removed", departure.room)
            return

        notice = PeerLeftMessage(peer_id=departure.participant_id).to_wire()
        await self._broadcast(self.registry.members_except(departure.room, connection), notice)

    async def _join(self, connection: SignalingConnection, message: JoinMessage) -> None:
        current = self.registry.room_of(connection)
        if current != message.room and self.registry.is_full(message.room):
            logger.warning("Rejecting %s: room %s is full", message.stream_id, message.room)
            await self._send(connection, ErrorMessage(error=ROOM_FULL).to_wire())
            return

        # No await between the capacity check and both registry changes.
        departure = None
        if current is not None and current != message.room:
            departure = self.registry.leave(connection)
        try:
            self.registry.join(message.room, message.stream_id, connection, role=message.role)
        except RoomFullError:
            await self._send(connection, ErrorMessage(error=ROOM_FULL).to_wire())
            return

        if departure is not None:
            await self._announce_departure(connection, departure)

        logger.info("Participant %s joined room %s as %s", message.stream_id, message.room, message.role)
        await self._send(connection, JoinedMessage(room=message.room, peer_id=message.stream_id).to_wire())

        notice = PeerJoinedMessage(peer_id=message.stream_id, role=message.role).to_wire()
        await self._broadcast(self.registry.members_except(message.room, connection), notice)

    async def _relay(self, connection: SignalingConnection, payload: dict) -> None:
        member = self.registry.member(connection)
        if member is None:
            return

        forwarded = {**payload, "from": member.participant_id}
        await self._broadcast(self.registry.members_except(member.room, connection), forwarded)

    async def _broadcast(self, members: Iterable[Member], message: dict) -> None:
        """Send a message to every listed member, isolating per-member failures."""

        targets = list(members)
        if not targets:
            return

        results = await asyncio.gather(
            *(member.connection.send(message) for member in targets),
            return_exceptions=True,
        )
        for member, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Failed to deliver %s to %s: %s", message.get("type"), member.participant_id, result)

    async def _send(self, connection: SignalingConnection, message: dict) -> None:
        try:
            await connection.send(message)
        except Exception as exc:  # noqa: BLE001 - a dead socket is cleaned up on close
            logger.warning("Failed to reply %s to %s: %s", message.get("type"), connection.connection_id, exc)
