"""WebRTC delivery: one VP8/IVF ffmpeg per camera feeding a shared sample sink."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from camrelay.errors import FrameContainerError
from camrelay.models.config import FfmpegConfig, HealthPolicyConfig, WebRTCConfig
from camrelay.models.enums import Transport
from camrelay.models.stream import StreamEntry
from camrelay.streaming.clock import Clock
from camrelay.streaming.ffmpeg import build_webrtc_command, resolve_binary
from camrelay.streaming.ivf import FramePacer, IvfDemuxer, pump_frames
from camrelay.streaming.process import ProcessFactory, TranscoderHandle
from camrelay.streaming.sink import VideoSampleSink
from camrelay.streaming.supervisor import BinaryResolver, SupervisedStreamService

if TYPE_CHECKING:
    from camrelay.streaming.signaling import PeerSession

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class WebRTCStreamEntry(StreamEntry):
    sink: VideoSampleSink | None = field(default=None, repr=False)
    pump_task: asyncio.Task[None] | None = field(default=None, repr=False)
    active: bool = False
    sessions: dict[str, PeerSession] = field(default_factory=dict, repr=False)


class WebRTCStreamService(SupervisedStreamService[WebRTCStreamEntry]):
    """Transcodes each camera to VP8 and paces frames into a `VideoSampleSink`.

    The sink outlives individual ffmpeg processes so viewers stay attached
    across restarts. Stopping closes the sink; peer sessions notice the ended
    track and unwind on their own.
    """

    transport = Transport.WEBRTC
    capture_stdout = True

    def __init__(
        self,
        config: WebRTCConfig,
        *,
        ffmpeg: FfmpegConfig,
        policy: HealthPolicyConfig,
        process_factory: ProcessFactory | None = None,
        binary_resolver: BinaryResolver = resolve_binary,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(
            ffmpeg=ffmpeg,
            policy=policy,
            process_factory=process_factory,
            binary_resolver=binary_resolver,
            clock=clock,
        )
        self.config = config

    def descriptor_for(self, camera_id: int) -> str:
        return self.config.signaling_path.format(camera_id=camera_id)

    def _create_entry(self, camera_id: int, source_url: str) -> WebRTCStreamEntry:
        return WebRTCStreamEntry(
            camera_id=camera_id,
            transport=self.transport,
            source_url=source_url,
            descriptor=self.descriptor_for(camera_id),
            sink=VideoSampleSink(
                camera_id,
                queue_size=self.config.track_queue_size,
                clock=self.clock,
            ),
        )

    def _build_command(self, entry: WebRTCStreamEntry, binary: str) -> list[str]:
        return build_webrtc_command(binary, entry.source_url, self.config)

    def output_updated_at(self, entry: WebRTCStreamEntry) -> float | None:
        if entry.sink is None:
            return None
        return entry.sink.last_sample_at

    def _entry_tasks(self, entry: WebRTCStreamEntry) -> list[asyncio.Task[None] | None]:
        return [entry.launch_task, entry.watch_task, entry.pump_task]

    async def _on_process_started(
        self, entry: WebRTCStreamEntry, process: TranscoderHandle
    ) -> None:
        entry.active = False
        # Output freshness is per process; a restart must produce new samples.
        if entry.sink is not None:
            entry.sink.last_sample_at = None
        entry.pump_task = asyncio.create_task(self._pump(entry, process))

    async def _on_entry_removed(self, entry: WebRTCStreamEntry) -> None:
        entry.active = False
        if entry.sink is not None:
            entry.sink.close()

    async def get_sink(self, camera_id: int) -> VideoSampleSink | None:
        """Return the camera's sink once its frame container header has been parsed."""
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            if entry is None or not entry.active:
                return None
            return entry.sink

    async def has_stream(self, camera_id: int) -> bool:
        async with self.registry.lock:
            return camera_id in self.registry

    async def add_session(self, camera_id: int, session: PeerSession) -> bool:
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            if entry is None:
                return False
            entry.sessions[session.session_id] = session
            return True

    async def remove_session(self, camera_id: int, session_id: str) -> None:
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            if entry is not None:
                entry.sessions.pop(session_id, None)

    async def session_count(self, camera_id: int) -> int:
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            return len(entry.sessions) if entry is not None else 0

    async def _pump(self, entry: WebRTCStreamEntry, process: TranscoderHandle) -> None:
        camera_id = entry.camera_id
        stdout = process.stdout
        sink = entry.sink
        if stdout is None or sink is None:
            logger.error(
                "WebRTC transcoder for camera %d has no stdout pipe",
                camera_id,
                extra={"camera_id": camera_id},
            )
            return

        demuxer = IvfDemuxer(stdout, camera_id=camera_id)
        try:
            header = await demuxer.read_header()
        except FrameContainerError as exc:
            logger.error(
                "Invalid frame container from camera %d: %s",
                camera_id,
                exc,
                extra={"camera_id": camera_id},
            )
            return

        async with self.registry.lock:
            if not self.registry.owns(entry) or entry.process is not process:
                return
            entry.active = True
        logger.info(
            "WebRTC pipeline active for camera %d: %s %dx%d",
            camera_id,
            header.fourcc,
            header.width,
            header.height,
            extra={"camera_id": camera_id},
        )

        pacer = FramePacer(1.0 / self.config.frame_rate, self.clock)
        delivered = await pump_frames(demuxer, sink, pacer, camera_id=camera_id)
        async with self.registry.lock:
            if entry.process is process:
                entry.active = False
        logger.info(
            "WebRTC frame stream ended for camera %d after %d frame(s)",
            camera_id,
            delivered,
            extra={"camera_id": camera_id},
        )
