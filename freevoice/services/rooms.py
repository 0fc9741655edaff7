"""In-memory room registry for the signaling relay.

The registry is pure bookkeeping: it never performs I/O and none of its
methods await. The relay calls it only from the event loop that owns it, so a
mutation always runs to completion before another connection's message is
looked at. Anything that drives it from several threads must serialize access
through that loop.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from ..schemas.signaling import Role

SendCallable = Callable[[dict], Awaitable[None]]

DEFAULT_CAPACITY = 50


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


@dataclass(slots=True)
class Member:
    connection: SignalingConnection
    participant_id: str
    role: Role
    room: str


@dataclass(frozen=True, slots=True)
class Departure:
    """Outcome of removing a connection from its room."""

    room: str
    participant_id: str
    room_empty: bool


class RoomFullError(Exception):
    """Raised when a join would push a room past its capacity."""

    def __init__(self, room: str | None, capacity: int | None = None) -> None:
        detail = f" ({capacity} members)" if capacity is not None else ""
        super().__init__(f"Room {room!r} is full{detail}")
        self.room = room
        self.capacity = capacity


class RoomRegistry:
    """Track room membership keyed by connection."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        # room -> {connection_id: Member}, insertion ordered
        self._rooms: Dict[str, Dict[str, Member]] = {}
        # connection_id -> Member
        self._members: Dict[str, Member] = {}

    def join(
        self,
        room: str,
        participant_id: str,
        connection: SignalingConnection,
        role: Role = "guest",
    ) -> Member:
        """Add a connection to the room, raising ``RoomFullError`` at capacity.

        A connection already in another room must leave it first.
        """

        current = self._members.get(connection.connection_id)
        if current is not None and current.room != room:
            raise ValueError(f"Connection {connection.connection_id} is already in room {current.room!r}")

        participants = self._rooms.get(room, {})
        if current is None and len(participants) >= self.capacity:
            raise RoomFullError(room, self.capacity)

        member = Member(connection=connection, participant_id=participant_id, role=role, room=room)
        participants[connection.connection_id] = member
        self._rooms[room] = participants
        self._members[connection.connection_id] = member
        return member

    def leave(self, connection: SignalingConnection) -> Departure | None:
        """Remove the connection from its room, deleting the room when empty."""

        member = self._members.pop(connection.connection_id, None)
        if member is None:
            return None

        participants = self._rooms.get(member.room, {})
        participants.pop(connection.connection_id, None)
        room_empty = not participants
        if room_empty:
            self._rooms.pop(member.room, None)
        return Departure(room=member.room, participant_id=member.participant_id, room_empty=room_empty)

    def members_except(self, room: str, connection: SignalingConnection) -> list[Member]:
        """Return other members of the room in join order."""

        participants = self._rooms.get(room, {})
        return [member for key, member in participants.items() if key != connection.connection_id]

    def member(self, connection: SignalingConnection) -> Member | None:
        return self._members.get(connection.connection_id)

    def room_of(self, connection: SignalingConnection) -> str | None:
        member = self._members.get(connection.connection_id)
        return member.room if member else None

    def is_full(self, room: str) -> bool:
        return len(self._rooms.get(room, {})) >= self.capacity

    def member_count(self, room: str) -> int:
        return len(self._rooms.get(room, {}))

    def rooms(self) -> dict[str, list[str]]:
        """Snapshot of room ids to participant ids."""

        return {
            room: [member.participant_id for member in participants.values()]
            for room, participants in self._rooms.items()
        }
