"""Local media capture contract and an aiortc ``MediaPlayer`` backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from aiortc.contrib.media import MediaPlayer

from ..core.config import AUDIO_CONSTRAINTS, QualityPreset
from .engine import MediaTrack

logger = logging.getLogger(__name__)


class CaptureError(RuntimeError):
    """Raised when a capture device cannot be opened."""


@dataclass(frozen=True, slots=True)
class MediaDevice:
    device_id: str
    kind: str  # videoinput | audioinput | audiooutput
    label: str = ""


@dataclass
class LocalMedia:
    audio: MediaTrack | None = None
    video: MediaTrack | None = None

    def tracks(self) -> list[MediaTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


class CaptureService(Protocol):
    async def get_user_media(self, constraints: Mapping[str, Any]) -> LocalMedia: ...

    async def get_display_media(self) -> LocalMedia: ...

    async def enumerate_devices(self) -> list[MediaDevice]: ...


def build_constraints(
    preset: QualityPreset,
    *,
    video: bool = True,
    audio: bool = True,
    device_id: str | None = None,
) -> dict[str, Any]:
    """Translate a quality preset into capture constraints."""

    video_constraints: dict[str, Any] | bool = False
    if video:
        video_constraints = {**preset.video_constraints(), "facingMode": "user"}
        if device_id:
            video_constraints["deviceId"] = {"exact": device_id}
    return {
        "audio": dict(AUDIO_CONSTRAINTS) if audio else False,
        "video": video_constraints,
    }


def _ideal(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value.get("ideal", value.get("exact"))
    return value


class MediaPlayerCapture:
    """Open capture devices through FFmpeg via aiortc's ``MediaPlayer``."""

    def __init__(
        self,
        *,
        video_device: str = "/dev/video0",
        video_format: str | None = "v4l2",
        audio_device: str = "default",
        audio_format: str | None = "pulse",
        screen_device: str = ":0.0",
        screen_format: str | None = "x11grab",
        devices: list[MediaDevice] | None = None,
    ) -> None:
        self.video_device = video_device
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.screen_device = screen_device
        self.screen_format = screen_format
        self.devices = devices if devices is not None else [
            MediaDevice(video_device, "videoinput", "Default camera"),
            MediaDevice(audio_device, "audioinput", "Default microphone"),
        ]

    async def get_user_media(self, constraints: Mapping[str, Any]) -> LocalMedia:
        media = LocalMedia()
        video = constraints.get("video")
        try:
            if video:
                media.video = self._open_video(video if isinstance(video, Mapping) else {})
            if constraints.get("audio"):
                player = MediaPlayer(self.audio_device, format=self.audio_format)
                if player.audio is None:
                    raise CaptureError(f"No audio track on {self.audio_device}")
                media.audio = player.audio
        except CaptureError:
            media.stop()
            raise
        except Exception as exc:  # noqa: BLE001 - PyAV raises a wide error hierarchy
            media.stop()
            raise CaptureError(f"Media access denied: {exc}") from exc
        return media

    async def get_display_media(self) -> LocalMedia:
        try:
            player = MediaPlayer(self.screen_device, format=self.screen_format, options={"framerate": "15"})
        except Exception as exc:  # noqa: BLE001 - PyAV raises a wide error hierarchy
            raise CaptureError(f"Screen capture denied: {exc}") from exc
        if player.video is None:
            raise CaptureError(f"No video track on {self.screen_device}")
        return LocalMedia(video=player.video)

    async def enumerate_devices(self) -> list[MediaDevice]:
        return list(self.devices)

    def _open_video(self, constraints: Mapping[str, Any]) -> MediaTrack:
        options: dict[str, str] = {}
        width = _ideal(constraints.get("width"))
        height = _ideal(constraints.get("height"))
        if width and height:
            options["video_size"] = f"{width}x{height}"
        frame_rate = _ideal(constraints.get("frameRate"))
        if frame_rate:
            options["framerate"] = str(frame_rate)

        device = _ideal(constraints.get("deviceId")) or self.video_device
        logger.debug("Opening camera %s with %s", device, options)
        player = MediaPlayer(device, format=self.video_format, options=options)
        if player.video is None:
            raise CaptureError(f"No video track on {device}")
        return player.video
