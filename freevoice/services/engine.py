"""Negotiation engine contract and its aiortc implementation.

The peer-session layer only talks to :class:`PeerConnection`. Descriptions and
candidates cross this boundary in their JSON wire shape
(``{"type", "sdp"}`` and ``{"candidate", "sdpMid", "sdpMLineIndex"}``) so they
can be relayed without conversion.

Event handlers registered with :meth:`PeerConnection.on` are coroutines:

* ``connectionstatechange`` -> ``handler(state: str)``
* ``track`` -> ``handler(track)``
* ``icecandidate`` -> ``handler(candidate: dict)``
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from ..core.config import settings

logger = logging.getLogger(__name__)

SessionDescription = dict[str, Any]
EventHandler = Callable[..., Awaitable[None]]


class MediaTrack(Protocol):
    kind: str

    def stop(self) -> None: ...

    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...


class TrackSender(Protocol):
    @property
    def track(self) -> MediaTrack | None: ...

    async def replace_track(self, track: MediaTrack | None) -> None: ...


class PeerConnection(Protocol):
    @property
    def local_description(self) -> SessionDescription | None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: Mapping[str, Any]) -> None: ...

    def add_track(self, track: MediaTrack) -> None: ...

    def get_senders(self) -> list[TrackSender]: ...

    def on(self, event: str, handler: EventHandler) -> None: ...

    async def get_stats(self) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...


EngineFactory = Callable[[], PeerConnection]


class AiortcSender:
    """Expose an ``RTCRtpSender`` through the :class:`TrackSender` contract."""

    def __init__(self, sender: Any) -> None:
        self._sender = sender

    @property
    def track(self) -> MediaTrack | None:
        return self._sender.track

    async def replace_track(self, track: MediaTrack | None) -> None:
        self._sender.replaceTrack(track)


class AiortcPeerConnection:
    """One aiortc ``RTCPeerConnection`` behind the engine contract.

    aiortc gathers candidates before ``setLocalDescription`` returns and embeds
    them in the SDP, so this adapter never fires ``icecandidate``; callers must
    relay :attr:`local_description` rather than the raw offer/answer.
    """

    def __init__(self, ice_servers: list[str]) -> None:
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=configuration)

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return {"type": description.type, "sdp": description.sdp}

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: Mapping[str, Any]) -> None:
        line = (candidate.get("candidate") or "").strip()
        if not line:
            logger.debug("Skipping end-of-candidates marker")
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        parsed = candidate_from_sdp(line)
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(parsed)

    def add_track(self, track: MediaTrack) -> None:
        self._pc.addTrack(track)

    def get_senders(self) -> list[TrackSender]:
        return [AiortcSender(sender) for sender in self._pc.getSenders()]

    def on(self, event: str, handler: EventHandler) -> None:
        if event == "connectionstatechange":

            async def _on_state_change() -> None:
                await handler(self._pc.connectionState)

            self._pc.on("connectionstatechange", _on_state_change)
        elif event == "track":
            self._pc.on("track", handler)
        elif event == "icecandidate":
            logger.debug("aiortc embeds candidates in the SDP; no trickle events will fire")
        else:
            raise ValueError(f"Unsupported engine event {event!r}")

    async def get_stats(self) -> list[dict[str, Any]]:
        """Return aiortc stats in the browser report shape telemetry reads.

        aiortc keeps no byte counter on ``inbound-rtp`` and reports no
        candidate pairs. The transport byte counter is copied onto the inbound
        video report, and the worst ``remote-inbound-rtp`` round trip becomes a
        succeeded ``candidate-pair``. aiortc has no frame size or frame rate
        counters, so those stay unset and read as 0.
        """

        report = await self._pc.getStats()
        reports = [dataclasses.asdict(stats) for stats in report.values()]

        bytes_received = sum(entry.get("bytesReceived") or 0 for entry in reports if entry["type"] == "transport")
        for entry in reports:
            if entry["type"] == "inbound-rtp" and entry.get("kind") == "video":
                entry.setdefault("bytesReceived", bytes_received)

        round_trips = [
            entry["roundTripTime"]
            for entry in reports
            if entry["type"] == "remote-inbound-rtp" and entry.get("roundTripTime") is not None
        ]
        if round_trips:
            reports.append(
                {
                    "id": "candidate-pair",
                    "type": "candidate-pair",
                    "state": "succeeded",
                    "currentRoundTripTime": max(round_trips),
                }
            )
        return reports

    async def close(self) -> None:
        await self._pc.close()


class AiortcEngine:
    """Factory producing aiortc-backed peer connections."""

    def __init__(self, ice_servers: list[str] | None = None) -> None:
        self.ice_servers = list(settings.ice_servers if ice_servers is None else ice_servers)

    def __call__(self) -> AiortcPeerConnection:
        return AiortcPeerConnection(self.ice_servers)
