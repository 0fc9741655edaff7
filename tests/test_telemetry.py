"""Tests for stats extraction and the telemetry poller."""
from __future__ import annotations

import asyncio

import pytest

from freevoice.services.telemetry import TelemetryPoller, TelemetrySample, parse_stats

SNAPSHOT = [
    {"type": "outbound-rtp", "kind": "video", "bytesSent": 99999},
    {"type": "inbound-rtp", "kind": "audio", "bytesReceived": 5000, "packetsLost": 9},
    {
        "type": "inbound-rtp",
        "kind": "video",
        "bytesReceived": 125_000,
        "packetsLost": 3,
        "frameWidth": 640,
        "frameHeight": 360,
        "framesPerSecond": 24,
    },
    {"type": "candidate-pair", "state": "in-progress", "currentRoundTripTime": 0.5},
    {"type": "candidate-pair", "state": "succeeded", "currentRoundTripTime": 0.042},
]


def test_parse_stats_reads_inbound_video_and_round_trip():
    sample = parse_stats(SNAPSHOT)

    assert sample.bitrate == 1000
    assert sample.packets_lost == 3
    assert sample.latency == 42
    assert (sample.width, sample.height) == (640, 360)
    assert sample.fps == 24.0


def test_parse_stats_accepts_mapping_and_missing_reports():
    assert parse_stats({"a": {"type": "transport"}}) == TelemetrySample(
        bitrate=0, packets_lost=0, latency=0, width=0, height=0, fps=0.0
    )


def test_parse_stats_uses_delta_with_previous_sample():
    previous = TelemetrySample(0, 0, 0, 0, 0, 0.0, bytes_received=100_000, captured_at=10.0)

    sample = parse_stats(SNAPSHOT, previous=previous, now=12.0)

    assert sample.bitrate == 100
    assert sample.captured_at == 12.0


@pytest.mark.asyncio
async def test_poller_emits_samples_until_stopped():
    emitted: list[TelemetrySample] = []
    delays: list[float] = []
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        if calls == 2:
            raise RuntimeError("stats unavailable")
        return SNAPSHOT

    async def sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    ticks = iter(range(100))
    poller = TelemetryPoller(fetch, emitted.append, 1.0, sleep=sleep, clock=lambda: float(next(ticks)))
    poller.start()
    for _ in range(20):
        if len(emitted) >= 2:
            break
        await asyncio.sleep(0)
    await poller.stop()

    assert not poller.running
    assert len(emitted) >= 2
    assert emitted[0].latency == 42
    assert set(delays) == {1.0}
    count = len(emitted)
    await asyncio.sleep(0)
    assert len(emitted) == count
