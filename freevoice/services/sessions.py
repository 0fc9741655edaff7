"""Peer session orchestration for the local participant.

One :class:`PeerSession` exists per remote participant. Sessions move through
``NEW -> OFFERING|ANSWERING -> NEGOTIATED -> CONNECTED -> CLOSED``. Only a
director/guest pair negotiates, and the director side (or the side that sees a
director join) always makes the offer, so two guests never connect to each
other and both sides of a pair never offer at once.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine

from ..core.config import QualityPreset, Settings, get_quality_preset, settings as default_settings
from ..schemas.signaling import (
    ROOM_FULL,
    AnswerMessage,
    ChatMessage,
    ErrorMessage,
    IceCandidateMessage,
    JoinedMessage,
    JoinMessage,
    LeaveMessage,
    OfferMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    Role,
)
from .capture import CaptureError, CaptureService, LocalMedia, build_constraints
from .engine import EngineFactory, MediaTrack, PeerConnection, SessionDescription
from .events import SessionListener
from .rooms import RoomFullError
from .signaling_client import SignalingClient, SignalingConnectionError
from .telemetry import TelemetryPoller

logger = logging.getLogger(__name__)

ROOM_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
STREAM_ID_ALPHABET = string.digits + string.ascii_uppercase

TERMINAL_ENGINE_STATES = frozenset({"disconnected", "failed"})


def generate_room_id(length: int = 8) -> str:
    """Room ids skip look-alike characters (0/O, 1/I)."""

    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


def generate_stream_id(length: int = 10) -> str:
    return "".join(secrets.choice(STREAM_ID_ALPHABET) for _ in range(length))


class SessionState(str, enum.Enum):
    NEW = "new"
    OFFERING = "offering"
    ANSWERING = "answering"
    NEGOTIATED = "negotiated"
    CONNECTED = "connected"
    CLOSED = "closed"


NEGOTIATING_STATES = frozenset({SessionState.OFFERING, SessionState.ANSWERING, SessionState.NEGOTIATED})


@dataclass(eq=False)
class PeerSession:
    peer_id: str
    connection: PeerConnection
    state: SessionState = SessionState.NEW
    remote_role: Role | None = None
    local_description: SessionDescription | None = None
    remote_description: SessionDescription | None = None
    pending_candidates: list[dict[str, Any]] = field(default_factory=list)
    negotiation: asyncio.Task[None] | None = None
    telemetry: TelemetryPoller | None = None


class PeerSessionManager:
    """Drive every peer session of the local participant."""

    def __init__(
        self,
        client: SignalingClient,
        engine_factory: EngineFactory,
        capture: CaptureService | None = None,
        listener: SessionListener | None = None,
        *,
        config: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.capture = capture
        self.listener = listener or SessionListener()
        self.sessions: dict[str, PeerSession] = {}
        self.room_id: str | None = None
        self.stream_id: str | None = None
        self.role: Role = "guest"
        self.quality: QualityPreset | None = None
        self.local_media: LocalMedia | None = None
        self.screen_media: LocalMedia | None = None
        self._engine_factory = engine_factory
        self._config = config or default_settings
        self._sleep = sleep
        self._pending_join: asyncio.Future[str] | None = None

        client.on_state_change = self.listener.on_signaling_state
        client.on("joined", self._on_joined)
        client.on("peer-joined", self._on_peer_joined)
        client.on("offer", self._on_offer)
        client.on("answer", self._on_answer)
        client.on("ice-candidate", self._on_ice_candidate)
        client.on("peer-left", self._on_peer_left)
        client.on("chat", self._on_chat)
        client.on("error", self._on_error)

    # Local media

    async def initialize(
        self,
        *,
        video: bool = True,
        audio: bool = True,
        quality: str | None = None,
        audio_only: bool = False,
    ) -> LocalMedia:
        """Acquire local capture tracks and assign this participant's stream id."""

        if self.capture is None:
            raise CaptureError("No capture service configured")

        preset = get_quality_preset(quality or self._config.default_quality)
        constraints = build_constraints(preset, video=video and not audio_only, audio=audio)
        logger.info("Requesting user media with constraints: %s", constraints)
        try:
            media = await self.capture.get_user_media(constraints)
        except CaptureError:
            logger.exception("Failed to get user media")
            raise
        except Exception as exc:  # noqa: BLE001 - normalise backend errors for the caller
            logger.exception("Failed to get user media")
            raise CaptureError(f"Media access denied: {exc}") from exc

        self.quality = preset
        self.local_media = media
        self.stream_id = generate_stream_id()
        logger.info("Local stream acquired: %s", self.stream_id)
        return media

    async def get_devices(self) -> dict[str, list[Any]]:
        grouped: dict[str, list[Any]] = {"cameras": [], "microphones": [], "speakers": []}
        if self.capture is None:
            return grouped
        try:
            devices = await self.capture.enumerate_devices()
        except Exception:  # noqa: BLE001 - an empty list is a usable answer for the UI
            logger.exception("Failed to enumerate devices")
            return grouped

        buckets = {"videoinput": "cameras", "audioinput": "microphones", "audiooutput": "speakers"}
        for device in devices:
            bucket = buckets.get(device.kind)
            if bucket:
                grouped[bucket].append(device)
        return grouped

    # Room lifecycle

    async def join_room(self, room_id: str, role: Role = "guest", *, url: str | None = None) -> str:
        """Join a room and wait for the relay to confirm.

        Raises ``RoomFullError`` when the relay rejects the join and
        ``TimeoutError`` when it never answers.
        """

        if self.stream_id is None:
            self.stream_id = generate_stream_id()
        if not self.client.connected:
            await self.client.connect(url)

        self.room_id = room_id
        self.role = role
        self._pending_join = asyncio.get_running_loop().create_future()
        logger.info("Joining room: %s as %s", room_id, role)
        try:
            sent = await self.client.send(JoinMessage(room=room_id, stream_id=self.stream_id, role=role))
            if not sent:
                raise SignalingConnectionError("Signaling connection dropped before join was sent")
            await asyncio.wait_for(self._pending_join, timeout=self._config.join_timeout)
        except (RoomFullError, SignalingConnectionError, asyncio.TimeoutError):
            self.room_id = None
            raise
        finally:
            self._pending_join = None
        return room_id

    async def leave_room(self) -> None:
        """Tear down every session, local track and the signaling connection."""

        if self.room_id is not None:
            await self.client.send(LeaveMessage(room=self.room_id, stream_id=self.stream_id))

        for session in list(self.sessions.values()):
            await self._close(session)
        self.sessions.clear()

        if self.local_media is not None:
            self.local_media.stop()
            self.local_media = None
        if self.screen_media is not None:
            self.screen_media.stop()
            self.screen_media = None

        if self._pending_join is not None and not self._pending_join.done():
            self._pending_join.cancel()

        await self.client.close()
        self.room_id = None
        self.stream_id = None
        self.role = "guest"
        logger.info("Left room and cleaned up")

    async def send_chat(self, text: str) -> bool:
        return await self.client.send(
            ChatMessage(
                text=text,
                from_=self.stream_id,
                room=self.room_id,
                timestamp=int(time.time() * 1000),
            )
        )

    # Track replacement

    async def start_screen_share(self) -> LocalMedia:
        """Send a screen capture instead of the camera to every peer."""

        if self.capture is None:
            raise CaptureError("No capture service configured")
        try:
            media = await self.capture.get_display_media()
        except CaptureError:
            logger.exception("Failed to start screen share")
            raise
        if media.video is None:
            media.stop()
            raise CaptureError("Screen capture returned no video track")

        if self.screen_media is not None:
            self.screen_media.stop()
        self.screen_media = media
        await self._replace_outbound_video(media.video)

        async def _on_ended() -> None:
            if self.screen_media is media:
                await self.stop_screen_share()

        media.video.on("ended", _on_ended)
        logger.info("Screen sharing started")
        return media

    async def stop_screen_share(self) -> bool:
        media, self.screen_media = self.screen_media, None
        if media is None:
            return False

        media.stop()
        camera = self.local_media.video if self.local_media else None
        if camera is not None:
            await self._replace_outbound_video(camera)
        logger.info("Screen sharing stopped")
        return True

    async def switch_camera(self, device_id: str) -> bool:
        """Swap the camera track on every session without renegotiating."""

        if self.local_media is None or self.capture is None:
            return False

        preset = self.quality or get_quality_preset(self._config.default_quality)
        constraints = build_constraints(preset, video=True, audio=False, device_id=device_id)
        try:
            media = await self.capture.get_user_media(constraints)
        except CaptureError:
            logger.exception("Failed to switch camera to %s", device_id)
            raise
        except Exception as exc:  # noqa: BLE001 - normalise backend errors for the caller
            logger.exception("Failed to switch camera to %s", device_id)
            raise CaptureError(f"Camera {device_id} unavailable: {exc}") from exc
        if media.video is None:
            media.stop()
            raise CaptureError(f"Camera {device_id} returned no video track")

        if self.screen_media is None:
            await self._replace_outbound_video(media.video)
        previous = self.local_media.video
        if previous is not None:
            previous.stop()
        self.local_media.video = media.video
        logger.info("Switched camera to: %s", device_id)
        return True

    async def _replace_outbound_video(self, track: MediaTrack) -> int:
        replaced = 0
        for session in list(self.sessions.values()):
            if session.state is SessionState.CLOSED:
                continue
            sender = next(
                (s for s in session.connection.get_senders() if s.track is not None and s.track.kind == "video"),
                None,
            )
            if sender is None:
                continue
            try:
                await sender.replace_track(track)
            except Exception:  # noqa: BLE001 - other sessions still get the new track
                logger.exception("Failed to replace video track for %s", session.peer_id)
                continue
            replaced += 1
        return replaced

    # Signaling handlers

    async def _on_joined(self, message: JoinedMessage) -> None:
        logger.info("Successfully joined room: %s", message.room)
        if self._pending_join is not None and not self._pending_join.done():
            self._pending_join.set_result(message.room)

    async def _on_error(self, message: ErrorMessage) -> None:
        logger.error("Signaling error: %s", message.error)
        if message.error == ROOM_FULL and self._pending_join is not None and not self._pending_join.done():
            self._pending_join.set_exception(RoomFullError(self.room_id))
            return
        self.listener.on_error(message.error)

    async def _on_peer_joined(self, message: PeerJoinedMessage) -> None:
        logger.info("Peer joined: %s (%s)", message.peer_id, message.role)
        if message.peer_id == self.stream_id:
            return
        if self.role != "director" and message.role != "director":
            logger.debug("Not negotiating with %s: neither side is a director", message.peer_id)
            return

        existing = self.sessions.get(message.peer_id)
        if existing is not None and existing.state is not SessionState.NEW:
            logger.info("Peer %s rejoined; replacing its previous session", message.peer_id)
            await self._close(existing)

        session = self._get_or_create(message.peer_id)
        session.remote_role = message.role
        await self._run_negotiation(session, self._offer(session))

    async def _on_offer(self, message: OfferMessage) -> None:
        peer_id = message.from_
        if not peer_id or not self._addressed_to_me(message.to):
            return

        session = self._get_or_create(peer_id)
        if session.state is SessionState.OFFERING:
            logger.warning("Ignoring offer from %s while our own offer is outstanding", peer_id)
            return
        await self._run_negotiation(session, self._answer(session, message.offer))

    async def _on_answer(self, message: AnswerMessage) -> None:
        peer_id = message.from_
        if not peer_id or not self._addressed_to_me(message.to):
            return

        session = self.sessions.get(peer_id)
        if session is None or session.state is not SessionState.OFFERING:
            logger.warning("Ignoring unexpected answer from %s", peer_id)
            return
        await self._run_negotiation(session, self._accept_answer(session, message.answer))

    async def _on_ice_candidate(self, message: IceCandidateMessage) -> None:
        peer_id = message.from_
        if not peer_id or message.candidate is None or not self._addressed_to_me(message.to):
            return

        session = self._get_or_create(peer_id)
        if session.remote_description is None:
            session.pending_candidates.append(message.candidate)
            logger.debug("Buffered ICE candidate from %s (%d pending)", peer_id, len(session.pending_candidates))
            return
        await self._add_candidate(session, message.candidate)

    async def _on_peer_left(self, message: PeerLeftMessage) -> None:
        session = self.sessions.get(message.peer_id)
        if session is not None:
            await self._close(session)

    async def _on_chat(self, message: ChatMessage) -> None:
        self.listener.on_chat(message.from_, message.text, message.timestamp)

    def _addressed_to_me(self, recipient: str | None) -> bool:
        # The relay fans out to the whole room; directed frames carry ``to``.
        return recipient is None or recipient == self.stream_id

    # Negotiation

    async def _offer(self, session: PeerSession) -> None:
        session.state = SessionState.OFFERING
        logger.info("Creating offer for peer: %s", session.peer_id)
        try:
            offer = await session.connection.create_offer()
            await session.connection.set_local_description(offer)
        except Exception:  # noqa: BLE001 - engine failures close only this session
            logger.exception("Failed to create offer for %s", session.peer_id)
            await self._close(session)
            return

        session.local_description = session.connection.local_description or offer
        await self.client.send(
            OfferMessage(
                offer=session.local_description,
                to=session.peer_id,
                room=self.room_id,
                from_=self.stream_id,
            )
        )

    async def _answer(self, session: PeerSession, offer: SessionDescription) -> None:
        if session.state is SessionState.NEW:
            session.state = SessionState.ANSWERING
        logger.info("Handling offer from peer: %s", session.peer_id)
        try:
            await session.connection.set_remote_description(offer)
            session.remote_description = offer
            await self._flush_candidates(session)
            answer = await session.connection.create_answer()
            await session.connection.set_local_description(answer)
        except Exception:  # noqa: BLE001 - engine failures close only this session
            logger.exception("Failed to handle offer from %s", session.peer_id)
            await self._close(session)
            return

        session.local_description = session.connection.local_description or answer
        if session.state is SessionState.ANSWERING:
            session.state = SessionState.NEGOTIATED
        await self.client.send(
            AnswerMessage(
                answer=session.local_description,
                to=session.peer_id,
                room=self.room_id,
                from_=self.stream_id,
            )
        )

    async def _accept_answer(self, session: PeerSession, answer: SessionDescription) -> None:
        logger.info("Handling answer from peer: %s", session.peer_id)
        try:
            await session.connection.set_remote_description(answer)
        except Exception:  # noqa: BLE001 - engine failures close only this session
            logger.exception("Failed to handle answer from %s", session.peer_id)
            await self._close(session)
            return

        session.remote_description = answer
        await self._flush_candidates(session)
        if session.state is SessionState.OFFERING:
            session.state = SessionState.NEGOTIATED

    async def _run_negotiation(self, session: PeerSession, step: Coroutine[Any, Any, None]) -> None:
        """Run one negotiation step as a task that closing the session can cancel."""

        task = asyncio.create_task(step)
        session.negotiation = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if session.negotiation is task:
                session.negotiation = None

        if not task.cancelled() and task.exception() is not None:
            logger.error("Negotiation with %s failed", session.peer_id, exc_info=task.exception())

    async def _flush_candidates(self, session: PeerSession) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(session, candidate)

    async def _add_candidate(self, session: PeerSession, candidate: dict[str, Any]) -> None:
        try:
            await session.connection.add_ice_candidate(candidate)
        except Exception:  # noqa: BLE001 - a bad candidate does not doom the session
            logger.exception("Failed to add ICE candidate from %s", session.peer_id)

    # Session lifecycle

    def _get_or_create(self, peer_id: str) -> PeerSession:
        session = self.sessions.get(peer_id)
        if session is not None:
            return session

        connection = self._engine_factory()
        session = PeerSession(peer_id=peer_id, connection=connection)
        for track in self._outbound_tracks():
            connection.add_track(track)
        connection.on("icecandidate", partial(self._on_local_candidate, session))
        connection.on("track", partial(self._on_remote_track, session))
        connection.on("connectionstatechange", partial(self._on_connection_state, session))
        self.sessions[peer_id] = session
        return session

    def _outbound_tracks(self) -> list[MediaTrack]:
        tracks: list[MediaTrack] = []
        if self.local_media is not None and self.local_media.audio is not None:
            tracks.append(self.local_media.audio)
        if self.screen_media is not None and self.screen_media.video is not None:
            tracks.append(self.screen_media.video)
        elif self.local_media is not None and self.local_media.video is not None:
            tracks.append(self.local_media.video)
        return tracks

    async def _on_local_candidate(self, session: PeerSession, candidate: dict[str, Any]) -> None:
        if session.state is SessionState.CLOSED:
            return
        await self.client.send(
            IceCandidateMessage(candidate=candidate, to=session.peer_id, room=self.room_id, from_=self.stream_id)
        )

    async def _on_remote_track(self, session: PeerSession, track: Any) -> None:
        logger.info("Received remote %s track from: %s", getattr(track, "kind", "media"), session.peer_id)
        self.listener.on_remote_track(session.peer_id, track)

    async def _on_connection_state(self, session: PeerSession, state: str) -> None:
        logger.info("Peer %s connection state: %s", session.peer_id, state)
        if session.state is SessionState.CLOSED:
            return

        if state == "connected" and session.state in NEGOTIATING_STATES:
            session.state = SessionState.CONNECTED
            self.listener.on_peer_connected(session.peer_id)
            session.telemetry = TelemetryPoller(
                session.connection.get_stats,
                partial(self.listener.on_telemetry, session.peer_id),
                self._config.stats_interval,
                sleep=self._sleep,
            )
            session.telemetry.start()
        elif state in TERMINAL_ENGINE_STATES:
            await self._close(session)

    async def _close(self, session: PeerSession) -> None:
        if self.sessions.get(session.peer_id) is session:
            del self.sessions[session.peer_id]
        if session.state is SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED

        if session.telemetry is not None:
            await session.telemetry.stop()
            session.telemetry = None
        task = session.negotiation
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        session.pending_candidates.clear()

        try:
            await session.connection.close()
        except Exception:  # noqa: BLE001 - the session is gone either way
            logger.exception("Error closing connection to %s", session.peer_id)

        logger.info("Peer left: %s", session.peer_id)
        self.listener.on_peer_disconnected(session.peer_id)
