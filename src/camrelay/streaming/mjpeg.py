"""MJPEG delivery: one ffmpeg per viewer piping multipart JPEG to the response."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import anyio

from camrelay.errors import LaunchError, StreamNotFoundError
from camrelay.models.config import FfmpegConfig, MJPEGConfig
from camrelay.models.enums import Transport
from camrelay.models.stream import StreamEntry
from camrelay.streaming.ffmpeg import (
    MJPEG_BOUNDARY,
    build_mjpeg_command,
    redact_rtsp_url,
    resolve_binary,
)
from camrelay.streaming.process import ProcessFactory, TranscoderHandle, make_process_factory
from camrelay.streaming.registry import StreamRegistry
from camrelay.streaming.supervisor import BinaryResolver

logger = logging.getLogger(__name__)

MJPEG_CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={MJPEG_BOUNDARY}"


@dataclass(slots=True, eq=False)
class MJPEGStreamEntry(StreamEntry):
    readers: set[MJPEGStreamReader] = field(default_factory=set, repr=False)


class MJPEGStreamReader:
    """Closable async byte stream over one viewer's ffmpeg stdout.

    Closing stops and reaps the process; reaching end of stream closes it too.
    """

    def __init__(
        self,
        service: MJPEGStreamService,
        entry: MJPEGStreamEntry,
        process: TranscoderHandle,
        *,
        chunk_size: int,
    ) -> None:
        self._service = service
        self._entry = entry
        self._process = process
        self._chunk_size = chunk_size
        self._closed = False

    @property
    def camera_id(self) -> int:
        return self._entry.camera_id

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> MJPEGStreamReader:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        stdout = self._process.stdout
        if stdout is None:
            await self.aclose()
            raise StopAsyncIteration
        try:
            chunk = await stdout.read(self._chunk_size)
        except Exception:
            await self.aclose()
            raise
        if not chunk:
            await self.aclose()
            raise StopAsyncIteration
        return chunk

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield chunks, closing the reader however iteration ends."""
        try:
            async for chunk in self:
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._service._detach_reader(self._entry, self)
        # A client disconnect cancels the response's task group; stop and reap regardless.
        with anyio.CancelScope(shield=True):
            try:
                await self._process.stop()
            except Exception as exc:
                logger.error(
                    "Failed to stop MJPEG transcoder for camera %d (pid=%d): %s",
                    self.camera_id,
                    self._process.pid,
                    exc,
                    exc_info=exc,
                    extra={"camera_id": self.camera_id},
                )


class MJPEGStreamService:
    """Registers MJPEG streams and spawns a transcoder per connected viewer."""

    transport = Transport.MJPEG
    content_type = MJPEG_CONTENT_TYPE

    def __init__(
        self,
        config: MJPEGConfig,
        *,
        ffmpeg: FfmpegConfig,
        process_factory: ProcessFactory | None = None,
        binary_resolver: BinaryResolver = resolve_binary,
    ) -> None:
        self.config = config
        self.registry: StreamRegistry[MJPEGStreamEntry] = StreamRegistry()
        self._ffmpeg = ffmpeg
        self._process_factory = process_factory or make_process_factory(
            kill_timeout_s=ffmpeg.kill_timeout_s
        )
        self._binary_resolver = binary_resolver

    def descriptor_for(self, camera_id: int) -> str:
        return self.config.public_path.format(camera_id=camera_id)

    async def start_stream(self, camera_id: int, source_url: str) -> str:
        """Register the camera; no process runs until a viewer opens a reader."""
        async with self.registry.lock:
            existing = self.registry.get(camera_id)
            if existing is not None:
                return existing.descriptor
            entry = MJPEGStreamEntry(
                camera_id=camera_id,
                transport=self.transport,
                source_url=source_url,
                descriptor=self.descriptor_for(camera_id),
            )
            self.registry.insert(entry)
        logger.info(
            "MJPEG stream registered for camera %d (%s)",
            camera_id,
            redact_rtsp_url(source_url),
            extra={"camera_id": camera_id},
        )
        return entry.descriptor

    async def open_reader(self, camera_id: int) -> MJPEGStreamReader:
        """Spawn a transcoder for one viewer.

        Raises:
            StreamNotFoundError: If the stream was never started
            LaunchError: If ffmpeg is missing or fails to start
        """
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            if entry is None:
                raise StreamNotFoundError(camera_id, self.transport)
            source_url = entry.source_url

        binary = self._binary_resolver(self._ffmpeg.binary)
        if binary is None:
            raise LaunchError(
                f"{self._ffmpeg.binary} not found; install ffmpeg to stream camera {camera_id}",
                camera_id=camera_id,
                transport=self.transport,
            )

        cmd = build_mjpeg_command(binary, source_url, self.config)
        try:
            process = await self._process_factory(
                cmd, capture_stdout=True, name=f"mjpeg-camera-{camera_id}"
            )
        except OSError as exc:
            raise LaunchError(
                f"error starting ffmpeg for camera {camera_id}: {exc}",
                camera_id=camera_id,
                transport=self.transport,
                cause=exc,
            ) from exc

        reader = MJPEGStreamReader(self, entry, process, chunk_size=self.config.chunk_size)
        async with self.registry.lock:
            owned = self.registry.owns(entry)
            if owned:
                entry.readers.add(reader)
                entry.healthy = True
        if not owned:
            await process.stop()
            raise StreamNotFoundError(camera_id, self.transport)

        logger.info(
            "MJPEG viewer attached for camera %d (pid=%d)",
            camera_id,
            process.pid,
            extra={"camera_id": camera_id},
        )
        return reader

    async def stop_stream(self, camera_id: int) -> None:
        """Close every open reader and remove the stream.

        Raises:
            StreamNotFoundError: If the stream was never started
        """
        async with self.registry.lock:
            entry = self.registry.remove(camera_id)
            if entry is None:
                raise StreamNotFoundError(camera_id, self.transport)
            readers = list(entry.readers)
        await self._close_readers(readers)
        logger.info(
            "MJPEG stream stopped for camera %d (%d viewer(s) closed)",
            camera_id,
            len(readers),
            extra={"camera_id": camera_id},
        )

    async def get_stream_url(self, camera_id: int) -> str | None:
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            return entry.descriptor if entry is not None else None

    async def get_stream_health(self, camera_id: int) -> bool:
        """Return True while at least one viewer is attached."""
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            if entry is None:
                raise StreamNotFoundError(camera_id, self.transport)
            return bool(entry.readers)

    async def get_all_stream_health(self) -> dict[int, bool]:
        async with self.registry.lock:
            return {entry.camera_id: bool(entry.readers) for entry in self.registry}

    async def reader_count(self, camera_id: int) -> int:
        async with self.registry.lock:
            entry = self.registry.get(camera_id)
            return len(entry.readers) if entry is not None else 0

    async def shutdown(self) -> None:
        async with self.registry.lock:
            readers = [
                reader
                for camera_id in self.registry.camera_ids()
                if (entry := self.registry.remove(camera_id)) is not None
                for reader in entry.readers
            ]
        await self._close_readers(readers)

    async def _close_readers(self, readers: list[MJPEGStreamReader]) -> None:
        if readers:
            await asyncio.gather(*(reader.aclose() for reader in readers))

    def _detach_reader(self, entry: MJPEGStreamEntry, reader: MJPEGStreamReader) -> None:
        # Synchronous so a cancelled close cannot skip it.
        entry.readers.discard(reader)
        entry.healthy = bool(entry.readers)
