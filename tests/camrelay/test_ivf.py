"""Tests for IVF demuxing and frame pacing."""

from __future__ import annotations

import asyncio
import struct

import pytest

from camrelay.errors import FrameContainerError
from camrelay.streaming.ivf import (
    IVF_FILE_HEADER_SIZE,
    FramePacer,
    IvfDemuxer,
    parse_file_header,
    pump_frames,
)
from tests.camrelay.mocks import FakeClock


def _file_header(
    *,
    signature: bytes = b"DKIF",
    width: int = 640,
    height: int = 480,
    rate: int = 30,
    scale: int = 1,
    frames: int = 0,
) -> bytes:
    return struct.pack("<4sHH4sHHIII4x", signature, 0, 32, b"VP80", width, height, rate, scale, frames)


def _frame(data: bytes, pts: int) -> bytes:
    return struct.pack("<IQ", len(data), pts) + data


def _reader(payload: bytes, *, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(payload)
    if eof:
        reader.feed_eof()
    return reader


async def _collect(demuxer: IvfDemuxer) -> list[tuple[int, bytes]]:
    return [(frame.pts, frame.data) async for frame in demuxer.frames()]


class _RecordingSink:
    def __init__(self, *, fail_on: int | None = None) -> None:
        self.samples: list[tuple[bytes, float]] = []
        self.fail_on = fail_on
        self.calls = 0

    def write_sample(self, data: bytes, duration_s: float) -> int:
        self.calls += 1
        if self.fail_on == self.calls:
            raise RuntimeError("sink closed")
        self.samples.append((data, duration_s))
        return 1


class TestFileHeader:
    """Tests for IVF file header parsing."""

    def test_parses_valid_header(self) -> None:
        """Dimensions, codec and timebase are decoded from the header."""
        # Given: A VP8 header for 640x480 at 30/1
        raw = _file_header()

        # When: Parsing
        header = parse_file_header(raw)

        # Then: Fields match
        assert header.fourcc == "VP80"
        assert (header.width, header.height) == (640, 480)
        assert (header.rate, header.scale) == (30, 1)
        assert header.header_size == IVF_FILE_HEADER_SIZE

    def test_rejects_bad_signature(self) -> None:
        """A header without the DKIF signature is rejected."""
        # Given: A header with the wrong signature
        raw = _file_header(signature=b"RIFF")

        # When/Then: Parsing raises FrameContainerError
        with pytest.raises(FrameContainerError, match="signature"):
            parse_file_header(raw, camera_id=3)

    @pytest.mark.asyncio
    async def test_truncated_header_raises(self) -> None:
        """A stream ending before 32 bytes fails with FrameContainerError."""
        # Given: Only part of a header before EOF
        demuxer = IvfDemuxer(_reader(_file_header()[:20]), camera_id=2)

        # When/Then: Reading the header raises
        with pytest.raises(FrameContainerError) as exc_info:
            await demuxer.read_header()
        assert exc_info.value.camera_id == 2
        assert "20 of 32" in str(exc_info.value)


class TestFrames:
    """Tests for frame record iteration."""

    @pytest.mark.asyncio
    async def test_yields_frames_in_order(self) -> None:
        """Frames are yielded with their timestamps and payloads."""
        # Given: A header and three frames
        payload = _file_header() + _frame(b"aaa", 0) + _frame(b"bb", 1) + _frame(b"c", 2)
        demuxer = IvfDemuxer(_reader(payload))
        await demuxer.read_header()

        # When: Iterating frames
        frames = await _collect(demuxer)

        # Then: All three arrive in order
        assert frames == [(0, b"aaa"), (1, b"bb"), (2, b"c")]

    @pytest.mark.asyncio
    async def test_skips_zero_length_records(self) -> None:
        """Zero-size frame records are skipped, not delivered."""
        # Given: An empty record between two frames
        payload = _file_header() + _frame(b"x", 0) + _frame(b"", 1) + _frame(b"y", 2)
        demuxer = IvfDemuxer(_reader(payload))
        await demuxer.read_header()

        # When: Iterating frames
        frames = await _collect(demuxer)

        # Then: Only non-empty frames are yielded
        assert frames == [(0, b"x"), (2, b"y")]

    @pytest.mark.asyncio
    async def test_truncated_frame_ends_stream(self) -> None:
        """A frame cut short by EOF terminates iteration without raising."""
        # Given: A complete frame followed by a partial one
        payload = _file_header() + _frame(b"full", 0) + _frame(b"partial-frame", 1)[:-4]
        demuxer = IvfDemuxer(_reader(payload))
        await demuxer.read_header()

        # When: Iterating frames
        frames = await _collect(demuxer)

        # Then: Only the complete frame is delivered
        assert frames == [(0, b"full")]


class TestPacing:
    """Tests for FramePacer and pump_frames."""

    @pytest.mark.asyncio
    async def test_pump_spaces_frames_by_interval(self) -> None:
        """Deliveries after the first wait one nominal frame interval."""
        # Given: Three frames and a 30fps pacer on a fake clock
        clock = FakeClock()
        payload = _file_header() + _frame(b"1", 0) + _frame(b"2", 1) + _frame(b"3", 2)
        demuxer = IvfDemuxer(_reader(payload))
        await demuxer.read_header()
        sink = _RecordingSink()
        pacer = FramePacer(1 / 30, clock)

        # When: Pumping all frames
        delivered = await pump_frames(demuxer, sink, pacer)

        # Then: Every frame reached the sink with the frame duration
        assert delivered == 3
        assert [data for data, _ in sink.samples] == [b"1", b"2", b"3"]
        assert all(duration == pytest.approx(1 / 30) for _, duration in sink.samples)

        # Then: Two inter-frame waits of one interval each
        assert clock.sleeps == [pytest.approx(1 / 30), pytest.approx(1 / 30)]

    @pytest.mark.asyncio
    async def test_pacer_does_not_wait_when_producer_is_slow(self) -> None:
        """No sleep happens when the interval has already elapsed."""
        # Given: A pacer whose last delivery was long ago
        clock = FakeClock()
        pacer = FramePacer(0.1, clock)
        pacer.mark()
        clock.advance(1.0)

        # When: Waiting for the next slot
        await pacer.wait()

        # Then: No sleep
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_pump(self) -> None:
        """A failing write is logged and later frames are still delivered."""
        # Given: A sink that fails on the second write
        clock = FakeClock()
        payload = _file_header() + _frame(b"1", 0) + _frame(b"2", 1) + _frame(b"3", 2)
        demuxer = IvfDemuxer(_reader(payload))
        await demuxer.read_header()
        sink = _RecordingSink(fail_on=2)

        # When: Pumping
        delivered = await pump_frames(demuxer, sink, FramePacer(0.01, clock), camera_id=1)

        # Then: The other frames got through
        assert delivered == 3
        assert [data for data, _ in sink.samples] == [b"1", b"3"]
