"""IVF frame-container parsing and real-time pacing for the WebRTC pipeline.

An IVF stream starts with a 32-byte file header followed by frame records,
each a 12-byte header (little-endian u32 payload size, u64 timestamp) and the
payload itself.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from camrelay.errors import FrameContainerError
from camrelay.models.enums import Transport
from camrelay.streaming.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

IVF_SIGNATURE = b"DKIF"
IVF_FILE_HEADER_SIZE = 32
IVF_FRAME_HEADER_SIZE = 12

_FILE_HEADER = struct.Struct("<4sHH4sHHIII4x")
_FRAME_HEADER = struct.Struct("<IQ")


@dataclass(frozen=True, slots=True)
class IvfHeader:
    version: int
    header_size: int
    fourcc: str
    width: int
    height: int
    rate: int
    scale: int
    frame_count: int


@dataclass(frozen=True, slots=True)
class IvfFrame:
    pts: int
    data: bytes


def parse_file_header(raw: bytes, *, camera_id: int = -1) -> IvfHeader:
    """Decode the 32-byte IVF file header.

    Raises:
        FrameContainerError: If the header is truncated or the signature is not DKIF
    """
    if len(raw) != IVF_FILE_HEADER_SIZE:
        raise FrameContainerError(
            f"IVF header truncated: got {len(raw)} of {IVF_FILE_HEADER_SIZE} bytes",
            camera_id=camera_id,
            transport=Transport.WEBRTC,
        )
    signature, version, header_size, fourcc, width, height, rate, scale, count = (
        _FILE_HEADER.unpack(raw)
    )
    if signature != IVF_SIGNATURE:
        raise FrameContainerError(
            f"invalid IVF signature {signature!r}",
            camera_id=camera_id,
            transport=Transport.WEBRTC,
        )
    return IvfHeader(
        version=version,
        header_size=header_size,
        fourcc=fourcc.decode("ascii", errors="replace"),
        width=width,
        height=height,
        rate=rate,
        scale=scale,
        frame_count=count,
    )


class IvfDemuxer:
    """Reads an IVF stream from an asyncio reader (typically ffmpeg stdout)."""

    def __init__(self, reader: asyncio.StreamReader, *, camera_id: int = -1) -> None:
        self._reader = reader
        self._camera_id = camera_id
        self.header: IvfHeader | None = None

    async def read_header(self) -> IvfHeader:
        try:
            raw = await self._reader.readexactly(IVF_FILE_HEADER_SIZE)
        except asyncio.IncompleteReadError as exc:
            raise FrameContainerError(
                f"IVF header truncated: got {len(exc.partial)} of {IVF_FILE_HEADER_SIZE} bytes",
                camera_id=self._camera_id,
                transport=Transport.WEBRTC,
                cause=exc,
            ) from exc
        self.header = parse_file_header(raw, camera_id=self._camera_id)
        return self.header

    async def frames(self) -> AsyncIterator[IvfFrame]:
        """Yield non-empty frames until end of stream or a short read."""
        while True:
            try:
                raw = await self._reader.readexactly(IVF_FRAME_HEADER_SIZE)
            except asyncio.IncompleteReadError:
                return
            size, pts = _FRAME_HEADER.unpack(raw)
            if size == 0:
                continue
            try:
                data = await self._reader.readexactly(size)
            except asyncio.IncompleteReadError as exc:
                logger.debug(
                    "IVF stream ended mid-frame for camera %d (%d of %d bytes)",
                    self._camera_id,
                    len(exc.partial),
                    size,
                    extra={"camera_id": self._camera_id},
                )
                return
            yield IvfFrame(pts=pts, data=data)


class FramePacer:
    """Spaces deliveries at least one nominal frame interval apart."""

    def __init__(self, interval_s: float, clock: Clock | None = None) -> None:
        self.interval_s = interval_s
        self._clock = clock or SystemClock()
        self._last_delivery: float | None = None

    async def wait(self) -> None:
        if self._last_delivery is None:
            return
        remaining = self._last_delivery + self.interval_s - self._clock.now()
        if remaining > 0:
            await self._clock.sleep(remaining)

    def mark(self) -> None:
        self._last_delivery = self._clock.now()


class SampleSink(Protocol):
    def write_sample(self, data: bytes, duration_s: float) -> int: ...


async def pump_frames(
    demuxer: IvfDemuxer,
    sink: SampleSink,
    pacer: FramePacer,
    *,
    camera_id: int = -1,
) -> int:
    """Drain `demuxer` into `sink` at the pacer's rate. Returns frames delivered.

    Sink failures are logged and the loop keeps draining so the producer never
    blocks on a full pipe.
    """
    delivered = 0
    async for frame in demuxer.frames():
        await pacer.wait()
        try:
            sink.write_sample(frame.data, pacer.interval_s)
        except Exception as exc:
            logger.warning(
                "Failed to deliver frame to camera %d sink: %s",
                camera_id,
                exc,
                extra={"camera_id": camera_id},
            )
        pacer.mark()
        delivered += 1
    return delivered
