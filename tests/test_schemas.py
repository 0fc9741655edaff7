"""Tests for signaling wire models."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from freevoice.schemas.signaling import (
    ChatMessage,
    JoinMessage,
    OfferMessage,
    PeerJoinedMessage,
    parse_frame,
    parse_message,
)


def test_parse_message_uses_wire_names():
    message = parse_message({"type": "join", "room": "R1", "streamId": "P1", "role": "director"})

    assert isinstance(message, JoinMessage)
    assert message.stream_id == "P1"
    assert message.role == "director"


def test_parse_frame_keeps_sender_and_unknown_fields():
    message = parse_frame('{"type": "offer", "offer": {"type": "offer", "sdp": "v=0"}, "from": "P1", "hint": 3}')

    assert isinstance(message, OfferMessage)
    assert message.from_ == "P1"
    assert message.to_wire() == {"type": "offer", "offer": {"type": "offer", "sdp": "v=0"}, "from": "P1", "hint": 3}


def test_to_wire_drops_unset_optionals():
    assert PeerJoinedMessage(peer_id="P2").to_wire() == {"type": "peer-joined", "peerId": "P2", "role": "guest"}
    assert ChatMessage(text="hi", from_="P1").to_wire() == {"type": "chat", "text": "hi", "from": "P1"}


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "unknown"},
        {"type": "join", "room": "R1"},
        {"type": "join", "room": "R1", "streamId": "P1", "role": "spectator"},
        {"room": "R1"},
    ],
)
def test_invalid_frames_raise(payload):
    with pytest.raises(ValidationError):
        parse_message(payload)
