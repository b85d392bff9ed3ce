"""Tests for transcoder health supervision and the restart policy."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from camrelay.models.config import FfmpegConfig, HealthPolicyConfig, HLSConfig
from camrelay.models.stream import StreamEntry
from camrelay.streaming.hls import HLSStreamService
from camrelay.streaming.monitor import StreamHealthMonitor
from tests.camrelay.mocks import FakeClock, RecordingProcessFactory, found_binary

RTSP_URL = "rtsp://192.168.1.10:554/stream1"


def _make_service(
    hls_config: HLSConfig,
    ffmpeg_config: FfmpegConfig,
    factory: RecordingProcessFactory,
    clock: FakeClock,
    **policy_overrides: float,
) -> HLSStreamService:
    policy_values: dict[str, float] = {
        "check_interval_s": 10.0,
        "stale_after_s": 20.0,
        "startup_grace_s": 30.0,
        "max_restarts": 5,
    }
    policy_values.update(policy_overrides)
    return HLSStreamService(
        hls_config,
        ffmpeg=ffmpeg_config,
        policy=HealthPolicyConfig(**policy_values),
        process_factory=factory,
        binary_resolver=found_binary,
        clock=clock,
    )


async def _running_entry(service: HLSStreamService, camera_id: int = 1) -> StreamEntry:
    await service.start_stream(camera_id, RTSP_URL)
    entry = service.registry.get(camera_id)
    assert entry is not None and entry.launch_task is not None
    await entry.launch_task
    return entry


async def _settle(entry: StreamEntry) -> None:
    if entry.launch_task is not None:
        await entry.launch_task


def _write_playlist(entry: StreamEntry, mtime: float, body: str = "#EXTM3U\n") -> Path:
    assert entry.output_path is not None
    entry.output_path.write_text(body)
    os.utime(entry.output_path, (mtime, mtime))
    return entry.output_path


class TestOutputFreshness:
    """Tests for grace, freshness and staleness decisions."""

    @pytest.mark.asyncio
    async def test_no_restart_within_startup_grace(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """A live process without output is left alone during startup grace."""
        # Given: A running stream with no playlist yet
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        clock.advance(29.0)

        # When: Running a health tick
        restarts = await monitor.check_once()

        # Then: No restart happens
        assert restarts == 0
        assert len(process_factory.processes) == 1
        assert entry.restart_count == 0

    @pytest.mark.asyncio
    async def test_missing_output_after_grace_restarts(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """A live process that never produced output is restarted after grace."""
        # Given: A running stream past its startup grace without output
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        first = process_factory.last
        clock.advance(31.0)

        # When: Running a health tick
        restarts = await monitor.check_once()
        await _settle(entry)

        # Then: Old process stopped, a new one launched, counter incremented
        assert restarts == 1
        assert first.stop_calls == 1
        assert len(process_factory.processes) == 2
        assert entry.process is process_factory.last
        assert entry.restart_count == 1

    @pytest.mark.asyncio
    async def test_missing_output_at_grace_boundary_restarts(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """Startup grace ends exactly at startup_grace_s."""
        # Given: A running stream exactly 30s old with no playlist
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        clock.advance(30.0)

        # When: Running a health tick
        restarts = await monitor.check_once()
        await _settle(entry)

        # Then: The transcoder is restarted
        assert restarts == 1
        assert len(process_factory.processes) == 2
        assert entry.restart_count == 1

    @pytest.mark.asyncio
    async def test_fresh_output_marks_healthy_and_resets_counter(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """Fresh playlist output marks the stream healthy and clears restarts."""
        # Given: A stream that has been restarted twice and now writes output
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        entry.restart_count = 2
        _write_playlist(entry, clock.time() - 5.0)

        # When: Running a health tick
        restarts = await monitor.check_once()

        # Then: Stream is healthy and the counter is reset
        assert restarts == 0
        assert entry.healthy is True
        assert entry.restart_count == 0
        assert entry.last_healthy_at == pytest.approx(clock.time() - 5.0)
        assert await service.get_stream_health(1) is True

    @pytest.mark.asyncio
    async def test_stale_output_restarts(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """A playlist older than stale_after_s triggers a restart."""
        # Given: A stream whose playlist stopped updating 25s ago
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        _write_playlist(entry, clock.time() - 25.0)
        assert entry.restart_count == 0

        # When: Running a health tick
        restarts = await monitor.check_once()
        await _settle(entry)

        # Then: Exactly one restart, counted once, with health cleared
        assert restarts == 1
        assert len(process_factory.processes) == 2
        assert entry.restart_count == 1
        assert entry.healthy is False

    @pytest.mark.asyncio
    async def test_dead_process_restarts(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """A process that exited on its own is replaced on the next tick."""
        # Given: A stream whose ffmpeg crashed
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        process_factory.last.exit(1)

        # When: Running a health tick
        restarts = await monitor.check_once()
        await _settle(entry)

        # Then: A replacement process is running
        assert restarts == 1
        assert entry.process is process_factory.last
        assert entry.process.is_alive()

    @pytest.mark.asyncio
    async def test_tick_collects_orphaned_segments(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """Each tick deletes segments the playlist no longer references."""
        # Given: A fresh playlist referencing one of two segments on disk
        service = _make_service(hls_config, ffmpeg_config, process_factory, clock)
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        playlist = _write_playlist(
            entry,
            clock.time(),
            body="#EXTM3U\n#EXTINF:2.0,\nsegment_005.ts\n",
        )
        (playlist.parent / "segment_004.ts").write_bytes(b"old")
        (playlist.parent / "segment_005.ts").write_bytes(b"new")

        # When: Running a health tick
        await monitor.check_once()

        # Then: Only the referenced segment survives
        assert not (playlist.parent / "segment_004.ts").exists()
        assert (playlist.parent / "segment_005.ts").exists()


class TestRestartCeiling:
    """Tests for the bounded restart budget."""

    @pytest.mark.asyncio
    async def test_exhausted_after_max_restarts(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """After max_restarts consecutive failures the stream is marked exhausted."""
        # Given: A policy allowing two restarts and a process that keeps dying
        service = _make_service(
            hls_config, ffmpeg_config, process_factory, clock, max_restarts=2
        )
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)

        # When: The process dies three times in a row
        for _ in range(3):
            process_factory.last.exit(1)
            await monitor.check_once()
            await _settle(entry)

        # Then: Two restarts were attempted, then the stream gave up
        assert len(process_factory.processes) == 3
        assert entry.exhausted is True
        assert entry.healthy is False
        assert entry.process is None
        status = await service.get_stream_status(1)
        assert status.exhausted is True
        assert status.restart_count == 2

        # Then: Further ticks do nothing
        assert await monitor.check_once() == 0
        assert len(process_factory.processes) == 3

    @pytest.mark.asyncio
    async def test_healthy_period_restores_budget(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """Intermittent failures separated by healthy output never exhaust the stream."""
        # Given: A policy allowing one restart
        service = _make_service(
            hls_config, ffmpeg_config, process_factory, clock, max_restarts=1
        )
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)

        for _ in range(3):
            # When: The process dies, is restarted, then produces fresh output
            process_factory.last.exit(1)
            await monitor.check_once()
            await _settle(entry)
            _write_playlist(entry, clock.time())
            await monitor.check_once()

        # Then: Every failure was recovered from
        assert entry.exhausted is False
        assert entry.healthy is True
        assert entry.restart_count == 0
        assert len(process_factory.processes) == 4

    @pytest.mark.asyncio
    async def test_start_after_stop_clears_exhaustion(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """An explicit stop and start gives an exhausted camera a fresh budget."""
        # Given: An exhausted stream
        service = _make_service(
            hls_config, ffmpeg_config, process_factory, clock, max_restarts=0
        )
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        process_factory.last.exit(1)
        await monitor.check_once()
        assert entry.exhausted is True

        # When: Stopping and starting again
        await service.stop_stream(1)
        fresh = await _running_entry(service)

        # Then: The new entry is not exhausted and has a live process
        assert fresh is not entry
        assert fresh.exhausted is False
        assert fresh.process_alive()


class TestMonitorLoop:
    """Tests for the background loop."""

    @pytest.mark.asyncio
    async def test_process_exit_wakes_monitor(
        self,
        hls_config: HLSConfig,
        ffmpeg_config: FfmpegConfig,
        process_factory: RecordingProcessFactory,
        clock: FakeClock,
    ) -> None:
        """A crashed transcoder is restarted without waiting for the interval."""
        # Given: A running monitor with a long interval
        service = _make_service(
            hls_config, ffmpeg_config, process_factory, clock, check_interval_s=3600.0
        )
        monitor = StreamHealthMonitor(service)
        entry = await _running_entry(service)
        monitor.start()

        try:
            # When: The process exits
            process_factory.last.exit(1)

            # Then: A replacement is spawned promptly
            async def _replaced() -> None:
                while len(process_factory.processes) < 2:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(_replaced(), timeout=2.0)
            await _settle(entry)
            assert entry.restart_count == 1
        finally:
            await monitor.stop()

        assert monitor.running is False
