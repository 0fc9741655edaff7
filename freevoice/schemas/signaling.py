"""Wire contracts for the signaling protocol.

Every frame is a JSON object tagged by ``type``. Field names follow the wire
(camelCase, ``from``); the models expose snake_case attributes and accept
either spelling on input. Unknown extra fields are preserved so the relay can
forward payloads it does not understand.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Role = Literal["director", "guest"]

MessageType = Literal[
    "join",
    "joined",
    "peer-joined",
    "offer",
    "answer",
    "ice-candidate",
    "peer-left",
    "leave",
    "chat",
    "error",
]

RELAYED_TYPES: frozenset[str] = frozenset({"offer", "answer", "ice-candidate", "chat"})

ROOM_FULL = "Room full"


class SignalingModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    room: str | None = None
    from_: str | None = Field(default=None, alias="from")
    to: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize with wire field names, dropping unset optionals."""

        return self.model_dump(by_alias=True, exclude_none=True)


class JoinMessage(SignalingModel):
    type: Literal["join"] = "join"
    room: str
    stream_id: str = Field(alias="streamId")
    role: Role = "guest"


class JoinedMessage(SignalingModel):
    type: Literal["joined"] = "joined"
    room: str
    peer_id: str = Field(alias="peerId")


class PeerJoinedMessage(SignalingModel):
    type: Literal["peer-joined"] = "peer-joined"
    peer_id: str = Field(alias="peerId")
    role: Role = "guest"


class OfferMessage(SignalingModel):
    type: Literal["offer"] = "offer"
    offer: dict[str, Any]


class AnswerMessage(SignalingModel):
    type: Literal["answer"] = "answer"
    answer: dict[str, Any]


class IceCandidateMessage(SignalingModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: dict[str, Any] | None = None


class PeerLeftMessage(SignalingModel):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str = Field(alias="peerId")


class LeaveMessage(SignalingModel):
    type: Literal["leave"] = "leave"
    stream_id: str | None = Field(default=None, alias="streamId")


class ChatMessage(SignalingModel):
    type: Literal["chat"] = "chat"
    text: str
    timestamp: int | None = None


class ErrorMessage(SignalingModel):
    type: Literal["error"] = "error"
    error: str


SignalingMessage = Annotated[
    Union[
        JoinMessage,
        JoinedMessage,
        PeerJoinedMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
        PeerLeftMessage,
        LeaveMessage,
        ChatMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[SignalingMessage] = TypeAdapter(SignalingMessage)


def parse_message(payload: Any) -> SignalingMessage:
    """Validate a decoded frame into its message variant.

    Raises ``pydantic.ValidationError`` for unknown types or missing fields.
    """

    return _adapter.validate_python(payload)


def parse_frame(frame: str | bytes) -> SignalingMessage:
    """Decode and validate a raw JSON frame."""

    return _adapter.validate_json(frame)
