"""Registry-backed lifecycle shared by process-supervised transports."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import ClassVar, Generic, TypeVar

from camrelay.errors import LaunchError, StreamNotFoundError
from camrelay.models.config import FfmpegConfig, HealthPolicyConfig
from camrelay.models.enums import RestartReason, Transport
from camrelay.models.stream import StreamEntry, StreamStatus
from camrelay.streaming.clock import Clock, SystemClock
from camrelay.streaming.ffmpeg import redact_rtsp_url, resolve_binary
from camrelay.streaming.process import ProcessFactory, TranscoderHandle, make_process_factory
from camrelay.streaming.registry import StreamRegistry

logger = logging.getLogger(__name__)

EntryT = TypeVar("EntryT", bound=StreamEntry)
BinaryResolver = Callable[[str], str | None]


class SupervisedStreamService(Generic[EntryT]):
    """Owns one transport's registry and the transcoder of every entry in it.

    Subclasses provide the entry shape, the ffmpeg command and the output
    freshness probe; this class owns start/stop, asynchronous launch, exit
    watching and the bounded restart step used by `StreamHealthMonitor`.
    """

    transport: ClassVar[Transport]
    capture_stdout: ClassVar[bool] = False

    def __init__(
        self,
        *,
        ffmpeg: FfmpegConfig,
        policy: HealthPolicyConfig,
        process_factory: ProcessFactory | None = None,
        binary_resolver: BinaryResolver = resolve_binary,
        clock: Clock | None = None,
    ) -> None:
        self.registry: StreamRegistry[EntryT] = StreamRegistry()
        self.policy = policy
        self.clock: Clock = clock or SystemClock()
        self._ffmpeg = ffmpeg
        self._process_factory = process_factory or make_process_factory(
            kill_timeout_s=ffmpeg.kill_timeout_s
        )
        self._binary_resolver = binary_resolver
        self._exit_listener: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    def _create_entry(self, camera_id: int, source_url: str) -> EntryT:
        raise NotImplementedError

    def _build_command(self, entry: EntryT, binary: str) -> list[str]:
        raise NotImplementedError

    def output_updated_at(self, entry: EntryT) -> float | None:
        """Wall-clock time the entry's output was last refreshed, or None if absent."""
        raise NotImplementedError

    def before_health_check(self, entry: EntryT) -> None:
        """Side-effect hook run for every entry at the start of a health tick."""
        return None

    def _prepare_launch(self, entry: EntryT) -> None:
        return None

    async def _on_process_started(self, entry: EntryT, process: TranscoderHandle) -> None:
        return None

    async def _on_entry_removed(self, entry: EntryT) -> None:
        return None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def set_exit_listener(self, listener: Callable[[], None] | None) -> None:
        """Register a callback fired when a transcoder exits unexpectedly."""
        self._exit_listener = listener

    async def start_stream(self, camera_id: int, source_url: str) -> str:
        """Register a stream for `camera_id` and launch its transcoder.

        Idempotent: an existing entry's descriptor is returned unchanged and the
        new source URL is ignored. The descriptor is valid before the transcoder
        produces output; health is reported separately.

        Raises:
            LaunchError: If the transcoder binary cannot be resolved
        """
        async with self.registry.lock:
            existing = self.registry.get(camera_id)
            if existing is not None:
                return existing.descriptor

            if self._binary_resolver(self._ffmpeg.binary) is None:
                raise LaunchError(
                    f"{self._ffmpeg.binary} not found; install ffmpeg to stream camera {camera_id}",
                    camera_id=camera_id,
                    transport=self.transport,
                )

            entry = self._create_entry(camera_id, source_url)
            entry.started_at = self.clock.now()
            self.registry.insert(entry)
            entry.launch_task = asyncio.create_task(self._launch(entry))

        logger.info(
            "Stream requested: transport=%s camera=%d source=%s descriptor=%s",
            self.transport,
            camera_id,
            redact_rtsp_url(source_url),
            entry.descriptor,
            extra={"camera_id": camera_id},
        )
        return entry.descriptor

    async def stop_stream(self, camera_id: int) -> None:
        """Stop and remove the stream for `camera_id`.

        Raises:
            StreamNotFoundError: If no stream is registered for the camera
        """
        async with self.registry.lock:
            entry = self.registry.remove(camera_id)
            if entry is None:
                raise StreamNotFoundError(camera_id, self.transport)
            await self._release_entry(entry)
        logger.info(
            "Stream stopped: transport=%s camera=%d",
            self.transport,
            camera_id,
            extra={"camera_id": camera_id},
        )

    async def get_stream_url(self, camera_id: int) -> str | None:
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            return entry.descriptor if entry is not None else None

    async def get_stream_health(self, camera_id: int) -> bool:
        async with self.registry.lock:
            return self._require_entry(camera_id).healthy

    async def get_stream_status(self, camera_id: int) -> StreamStatus:
        async with self.registry.lock:
            return StreamStatus.from_entry(self._require_entry(camera_id))

    async def get_all_stream_health(self) -> dict[int, bool]:
        async with self.registry.lock:
            return {entry.camera_id: entry.healthy for entry in self.registry}

    async def shutdown(self, timeout_s: float = 10.0) -> None:
        """Stop every stream and wait for launch/exit tasks to settle."""
        async with self.registry.lock:
            entries = [
                entry
                for camera_id in self.registry.camera_ids()
                if (entry := self.registry.remove(camera_id)) is not None
            ]
            for entry in entries:
                await self._release_entry(entry)

        pending = [
            task
            for entry in entries
            for task in self._entry_tasks(entry)
            if task is not None and not task.done()
        ]
        if not pending:
            return
        _, still_pending = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_pending:
            task.cancel()

    # ------------------------------------------------------------------
    # Supervision (called by StreamHealthMonitor with the lock held)
    # ------------------------------------------------------------------

    async def restart_unsafe(self, entry: EntryT, reason: RestartReason) -> None:
        """Kill the entry's transcoder and relaunch it within the restart budget.

        Must be called with `registry.lock` held.
        """
        await self._stop_process(entry)

        if entry.restart_count >= self.policy.max_restarts:
            entry.healthy = False
            if not entry.exhausted:
                entry.exhausted = True
                logger.error(
                    "Camera %d exceeded %d restart attempts (%s); marking unhealthy until restarted",
                    entry.camera_id,
                    self.policy.max_restarts,
                    reason,
                    extra={"camera_id": entry.camera_id},
                )
            return

        entry.restart_count += 1
        entry.healthy = False
        entry.started_at = self.clock.now()
        logger.warning(
            "Restarting %s transcoder for camera %d: reason=%s attempt=%d/%d",
            self.transport,
            entry.camera_id,
            reason,
            entry.restart_count,
            self.policy.max_restarts,
            extra={"camera_id": entry.camera_id},
        )
        entry.launch_task = asyncio.create_task(self._launch(entry))

    def mark_healthy_unsafe(self, entry: EntryT, updated_at: float) -> None:
        """Record fresh output. Must be called with `registry.lock` held."""
        if not entry.healthy:
            logger.info(
                "Stream healthy: transport=%s camera=%d",
                self.transport,
                entry.camera_id,
                extra={"camera_id": entry.camera_id},
            )
        entry.healthy = True
        entry.last_healthy_at = updated_at
        entry.restart_count = 0

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_entry(self, camera_id: int) -> EntryT:
        entry = self.registry.get(camera_id)
        if entry is None:
            raise StreamNotFoundError(camera_id, self.transport)
        return entry

    def _entry_tasks(self, entry: EntryT) -> list[asyncio.Task[None] | None]:
        return [entry.launch_task, entry.watch_task]

    async def _release_entry(self, entry: EntryT) -> None:
        await self._stop_process(entry)
        await self._on_entry_removed(entry)

    async def _stop_process(self, entry: EntryT) -> None:
        process = entry.process
        entry.process = None
        if process is None:
            return
        try:
            await process.stop()
        except Exception as exc:
            logger.error(
                "Failed to stop transcoder for camera %d (pid=%s): %s",
                entry.camera_id,
                process.pid,
                exc,
                exc_info=exc,
                extra={"camera_id": entry.camera_id},
            )

    async def _discard_entry(self, entry: EntryT) -> None:
        async with self.registry.lock:
            if not self.registry.owns(entry):
                return
            self.registry.remove(entry.camera_id)
            await self._on_entry_removed(entry)

    async def _launch(self, entry: EntryT) -> None:
        camera_id = entry.camera_id
        binary = self._binary_resolver(self._ffmpeg.binary)
        if binary is None:
            logger.error(
                "%s not found; dropping %s stream for camera %d (install ffmpeg to enable streaming)",
                self._ffmpeg.binary,
                self.transport,
                camera_id,
                extra={"camera_id": camera_id},
            )
            await self._discard_entry(entry)
            return

        async with self.registry.lock:
            if not self.registry.owns(entry):
                return
            try:
                self._prepare_launch(entry)
            except OSError as exc:
                logger.error(
                    "Failed to prepare %s output for camera %d: %s",
                    self.transport,
                    camera_id,
                    exc,
                    extra={"camera_id": camera_id},
                )
                self.registry.remove(camera_id)
                await self._on_entry_removed(entry)
                return

        cmd = self._build_command(entry, binary)
        try:
            process = await self._process_factory(
                cmd,
                capture_stdout=self.capture_stdout,
                name=f"{self.transport}-camera-{camera_id}",
            )
        except OSError as exc:
            logger.error(
                "Failed to start %s transcoder for camera %d: %s",
                self.transport,
                camera_id,
                exc,
                extra={"camera_id": camera_id},
            )
            await self._discard_entry(entry)
            return

        async with self.registry.lock:
            if not self.registry.owns(entry):
                logger.info(
                    "Stream for camera %d stopped during launch; discarding transcoder pid=%d",
                    camera_id,
                    process.pid,
                    extra={"camera_id": camera_id},
                )
                await process.stop()
                return
            entry.process = process
            entry.healthy = False
            entry.started_at = self.clock.now()
            await self._on_process_started(entry, process)
            entry.watch_task = asyncio.create_task(self._watch_exit(entry, process))

    async def _watch_exit(self, entry: EntryT, process: TranscoderHandle) -> None:
        return_code = await process.wait()
        async with self.registry.lock:
            if not self.registry.owns(entry) or entry.process is not process:
                return
            entry.healthy = False
        logger.warning(
            "%s transcoder for camera %d exited: pid=%d rc=%s",
            self.transport,
            entry.camera_id,
            process.pid,
            return_code,
            extra={"camera_id": entry.camera_id},
        )
        listener = self._exit_listener
        if listener is not None:
            listener()
