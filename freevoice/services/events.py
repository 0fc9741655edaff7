"""Observer interface the UI layer implements to follow peer sessions."""
from __future__ import annotations

from typing import Any

from .signaling_client import ConnectionState
from .telemetry import TelemetrySample


class SessionListener:
    """No-op base listener; subclass and override the notifications you need."""

    def on_peer_connected(self, peer_id: str) -> None:
        pass

    def on_peer_disconnected(self, peer_id: str) -> None:
        pass

    def on_remote_track(self, peer_id: str, track: Any) -> None:
        pass

    def on_telemetry(self, peer_id: str, sample: TelemetrySample) -> None:
        pass

    def on_signaling_state(self, state: ConnectionState) -> None:
        pass

    def on_chat(self, peer_id: str | None, text: str, timestamp: int | None) -> None:
        pass

    def on_error(self, reason: str) -> None:
        pass
