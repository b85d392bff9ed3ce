"""HLS delivery: one ffmpeg per camera writing a rolling playlist to disk."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from camrelay.models.config import FfmpegConfig, HealthPolicyConfig, HLSConfig
from camrelay.models.enums import Transport
from camrelay.models.stream import StreamEntry
from camrelay.streaming.clock import Clock
from camrelay.streaming.ffmpeg import HLS_PLAYLIST_NAME, build_hls_command, resolve_binary
from camrelay.streaming.process import ProcessFactory
from camrelay.streaming.segments import SegmentGarbageCollector
from camrelay.streaming.supervisor import BinaryResolver, SupervisedStreamService

logger = logging.getLogger(__name__)


def camera_dir_name(camera_id: int) -> str:
    return f"camera_{camera_id}"


class HLSStreamService(SupervisedStreamService[StreamEntry]):
    """Serves each camera as `<public_path>/camera_<id>/playlist.m3u8`.

    Freshness is the playlist's modification time; orphaned segments are
    collected at the start of every health tick.
    """

    transport = Transport.HLS
    capture_stdout = False

    def __init__(
        self,
        config: HLSConfig,
        *,
        ffmpeg: FfmpegConfig,
        policy: HealthPolicyConfig,
        process_factory: ProcessFactory | None = None,
        binary_resolver: BinaryResolver = resolve_binary,
        clock: Clock | None = None,
        collector: SegmentGarbageCollector | None = None,
    ) -> None:
        super().__init__(
            ffmpeg=ffmpeg,
            policy=policy,
            process_factory=process_factory,
            binary_resolver=binary_resolver,
            clock=clock,
        )
        self.config = config
        self.output_root = Path(config.output_dir)
        self._collector = collector or SegmentGarbageCollector()

    def playlist_path(self, camera_id: int) -> Path:
        return self.output_root / camera_dir_name(camera_id) / HLS_PLAYLIST_NAME

    def descriptor_for(self, camera_id: int) -> str:
        base = self.config.public_path.rstrip("/")
        return f"{base}/{camera_dir_name(camera_id)}/{HLS_PLAYLIST_NAME}"

    def _create_entry(self, camera_id: int, source_url: str) -> StreamEntry:
        return StreamEntry(
            camera_id=camera_id,
            transport=self.transport,
            source_url=source_url,
            descriptor=self.descriptor_for(camera_id),
            output_path=self.playlist_path(camera_id),
        )

    def _prepare_launch(self, entry: StreamEntry) -> None:
        assert entry.output_path is not None
        entry.output_path.parent.mkdir(parents=True, exist_ok=True)

    def _build_command(self, entry: StreamEntry, binary: str) -> list[str]:
        assert entry.output_path is not None
        return build_hls_command(binary, entry.source_url, entry.output_path, self.config)

    def output_updated_at(self, entry: StreamEntry) -> float | None:
        if entry.output_path is None:
            return None
        try:
            return entry.output_path.stat().st_mtime
        except OSError:
            return None

    def before_health_check(self, entry: StreamEntry) -> None:
        if entry.output_path is not None:
            self._collector.collect(entry.output_path, camera_id=entry.camera_id)

    async def _on_entry_removed(self, entry: StreamEntry) -> None:
        if not self.config.remove_on_stop or entry.output_path is None:
            return
        camera_dir = entry.output_path.parent
        try:
            shutil.rmtree(camera_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning(
                "Failed to remove HLS output for camera %d at %s: %s",
                entry.camera_id,
                camera_dir,
                exc,
                extra={"camera_id": entry.camera_id},
            )
