"""Connection telemetry: stats extraction and per-session polling."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping

logger = logging.getLogger(__name__)

StatsFetcher = Callable[[], Awaitable[Any]]
SampleHandler = Callable[["TelemetrySample"], None]


@dataclass(frozen=True, slots=True)
class TelemetrySample:
    bitrate: int  # kbps
    packets_lost: int
    latency: int  # ms, round trip
    width: int
    height: int
    fps: float
    bytes_received: int = 0
    captured_at: float | None = None


def parse_stats(
    reports: Iterable[Mapping[str, Any]] | Mapping[str, Mapping[str, Any]],
    previous: TelemetrySample | None = None,
    now: float | None = None,
) -> TelemetrySample:
    """Reduce a stats snapshot to a telemetry sample.

    Only the inbound video RTP report and the succeeded candidate pair are
    read. With a ``previous`` sample and a clock reading, bitrate is the byte
    counter delta over the elapsed time; otherwise it is the cumulative
    ``bytesReceived`` in kilobits.
    """

    if isinstance(reports, Mapping):
        reports = reports.values()

    inbound: Mapping[str, Any] = {}
    latency = 0
    for report in reports:
        report_type = report.get("type")
        if report_type == "inbound-rtp" and report.get("kind") == "video":
            inbound = report
        elif report_type == "candidate-pair" and report.get("state") == "succeeded":
            round_trip = report.get("currentRoundTripTime")
            latency = round(round_trip * 1000) if round_trip else 0

    bytes_received = int(inbound.get("bytesReceived") or 0)
    bitrate = round(bytes_received * 8 / 1000)
    if previous is not None and previous.captured_at is not None and now is not None:
        elapsed = now - previous.captured_at
        delta = bytes_received - previous.bytes_received
        if elapsed > 0 and delta >= 0:
            bitrate = round(delta * 8 / (elapsed * 1000))

    return TelemetrySample(
        bitrate=bitrate,
        packets_lost=int(inbound.get("packetsLost") or 0),
        latency=latency,
        width=int(inbound.get("frameWidth") or 0),
        height=int(inbound.get("frameHeight") or 0),
        fps=float(inbound.get("framesPerSecond") or 0),
        bytes_received=bytes_received,
        captured_at=now,
    )


class TelemetryPoller:
    """Periodically fetch stats for one session and emit samples."""

    def __init__(
        self,
        fetch: StatsFetcher,
        emit: SampleHandler,
        interval: float,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self._fetch = fetch
        self._emit = emit
        self._sleep = sleep
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        previous: TelemetrySample | None = None
        while True:
            await self._sleep(self.interval)
            try:
                reports = await self._fetch()
            except Exception:  # noqa: BLE001 - keep polling through transient failures
                logger.exception("Failed to get stats")
                continue

            previous = parse_stats(reports, previous=previous, now=self._clock())
            try:
                self._emit(previous)
            except Exception:  # noqa: BLE001 - observer errors stay with the observer
                logger.exception("Telemetry listener failed")
