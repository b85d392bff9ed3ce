"""Shared per-camera media sink fanning pre-encoded frames out to viewer tracks."""

from __future__ import annotations

import asyncio
import logging
from fractions import Fraction

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import Packet

from camrelay.streaming.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

VIDEO_CLOCK_RATE = 90000
VIDEO_TIME_BASE = Fraction(1, VIDEO_CLOCK_RATE)


class SinkTrack(MediaStreamTrack):
    """Video track fed by a `VideoSampleSink`.

    Yields `av.Packet`s so aiortc packetizes the already-encoded VP8 payload
    instead of re-encoding it. When the queue is full the oldest frame is
    dropped, keeping slow viewers close to live.
    """

    kind = "video"

    def __init__(self, sink: VideoSampleSink, *, queue_size: int) -> None:
        super().__init__()
        self._sink = sink
        self._queue: asyncio.Queue[tuple[bytes, int] | None] = asyncio.Queue(maxsize=queue_size)
        self._pts = 0

    def push(self, data: bytes, duration_s: float) -> None:
        if self.readyState != "live":
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait((data, self._pts))
        self._pts += max(1, round(duration_s * VIDEO_CLOCK_RATE))

    def end(self) -> None:
        """End the track, waking any pending `recv` with end of media."""
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(None)
        self.stop()

    async def recv(self) -> Packet:
        if self.readyState != "live":
            raise MediaStreamError
        item = await self._queue.get()
        if item is None:
            self.stop()
            raise MediaStreamError
        data, pts = item
        packet = Packet(data)
        packet.pts = pts
        packet.dts = pts
        packet.time_base = VIDEO_TIME_BASE
        return packet

    def stop(self) -> None:
        super().stop()
        self._sink.unsubscribe(self)


class VideoSampleSink:
    """Per-camera fan-out point written by the frame pump."""

    def __init__(
        self,
        camera_id: int,
        *,
        queue_size: int = 4,
        clock: Clock | None = None,
    ) -> None:
        self.camera_id = camera_id
        self._queue_size = queue_size
        self._clock = clock or SystemClock()
        self._tracks: set[SinkTrack] = set()
        self.last_sample_at: float | None = None
        self.samples_written = 0
        self.closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._tracks)

    def subscribe(self) -> SinkTrack:
        if self.closed:
            raise RuntimeError(f"sink for camera {self.camera_id} is closed")
        track = SinkTrack(self, queue_size=self._queue_size)
        self._tracks.add(track)
        return track

    def unsubscribe(self, track: SinkTrack) -> None:
        self._tracks.discard(track)

    def write_sample(self, data: bytes, duration_s: float) -> int:
        """Queue one encoded frame on every live track. Returns tracks reached."""
        if self.closed:
            raise RuntimeError(f"sink for camera {self.camera_id} is closed")
        self.last_sample_at = self._clock.time()
        self.samples_written += 1
        for track in list(self._tracks):
            track.push(data, duration_s)
        return len(self._tracks)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        tracks = list(self._tracks)
        self._tracks.clear()
        for track in tracks:
            track.end()
        logger.debug(
            "Closed sink for camera %d (%d track(s) ended)",
            self.camera_id,
            len(tracks),
            extra={"camera_id": self.camera_id},
        )
