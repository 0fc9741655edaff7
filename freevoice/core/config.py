"""Runtime configuration for the relay and the peer-session client."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="info")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8888)
    room_capacity: int = Field(default=50, ge=1)

    signaling_url: str = Field(default="ws://localhost:8888")
    reconnect_base_delay: float = Field(default=2.0, ge=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    join_timeout: float = Field(default=10.0, gt=0)

    stats_interval: float = Field(default=1.0, gt=0)
    default_quality: str = Field(default="medium")
    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
        "stun:stun.services.mozilla.com",
    ])

    @field_validator("ice_servers", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@dataclass(frozen=True, slots=True)
class QualityPreset:
    name: str
    width: int
    height: int
    frame_rate: int
    max_frame_rate: int | None
    bitrate: int
    label: str

    def video_constraints(self) -> dict[str, Any]:
        frame_rate: dict[str, int] = {"ideal": self.frame_rate}
        if self.max_frame_rate is not None:
            frame_rate["max"] = self.max_frame_rate
        return {
            "width": {"ideal": self.width},
            "height": {"ideal": self.height},
            "frameRate": frame_rate,
        }


QUALITY_PRESETS: dict[str, QualityPreset] = {
    "low": QualityPreset("low", 426, 240, 15, 20, 200_000, "240p - Rural/3G"),
    "medium": QualityPreset("medium", 640, 360, 24, 30, 500_000, "360p - Standard"),
    "high": QualityPreset("high", 854, 480, 30, None, 1_000_000, "480p - Good Quality"),
    "hd": QualityPreset("hd", 1280, 720, 30, None, 2_000_000, "720p HD"),
    "fhd": QualityPreset("fhd", 1920, 1080, 30, None, 4_000_000, "1080p Full HD"),
}

AUDIO_CONSTRAINTS: dict[str, Any] = {
    "echoCancellation": True,
    "noiseSuppression": True,
    "autoGainControl": True,
    "sampleRate": 48000,
    "channelCount": 2,
}


def get_quality_preset(name: str) -> QualityPreset:
    """Look up a quality preset by name."""

    try:
        return QUALITY_PRESETS[name.strip().lower()]
    except KeyError:
        known = ", ".join(QUALITY_PRESETS)
        raise ValueError(f"Unknown quality preset {name!r}; expected one of: {known}") from None


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
