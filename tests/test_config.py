import pytest

from freevoice.core.config import QUALITY_PRESETS, Settings, get_quality_preset


def test_settings_defaults():
    config = Settings()

    assert config.port == 8888
    assert config.room_capacity == 50
    assert config.reconnect_base_delay == 2.0
    assert config.max_reconnect_attempts == 5
    assert config.stats_interval == 1.0
    assert config.ice_servers[0] == "stun:stun.l.google.com:19302"


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("ROOM_CAPACITY", "4")
    monkeypatch.setenv("ICE_SERVERS", "stun:a.example:3478, turn:b.example:3478")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://one.example,https://two.example")

    config = Settings()

    assert config.port == 9000
    assert config.room_capacity == 4
    assert config.ice_servers == ["stun:a.example:3478", "turn:b.example:3478"]
    assert config.cors_allow_origins == ["https://one.example", "https://two.example"]


def test_quality_presets():
    assert set(QUALITY_PRESETS) == {"low", "medium", "high", "hd", "fhd"}
    assert get_quality_preset(" HD ").width == 1280
    assert get_quality_preset("high").video_constraints()["frameRate"] == {"ideal": 30}

    with pytest.raises(ValueError):
        get_quality_preset("8k")
