"""Stream entry state owned by a transport service registry."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from camrelay.models.enums import Transport

if TYPE_CHECKING:
    from camrelay.streaming.process import TranscoderHandle


@dataclass(slots=True, eq=False)
class StreamEntry:
    """Per-camera, per-transport stream state.

    All mutable fields are only touched while holding the owning registry's lock.
    The process handle is owned by the entry and never outlives it.
    """

    camera_id: int
    transport: Transport
    source_url: str
    descriptor: str
    output_path: Path | None = None
    process: TranscoderHandle | None = field(default=None, repr=False)
    started_at: float = 0.0
    last_healthy_at: float | None = None
    restart_count: int = 0
    healthy: bool = False
    exhausted: bool = False
    launch_task: asyncio.Task[None] | None = field(default=None, repr=False)
    watch_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def launching(self) -> bool:
        task = self.launch_task
        return task is not None and not task.done()

    def process_alive(self) -> bool:
        process = self.process
        return process is not None and process.is_alive()


@dataclass(frozen=True, slots=True)
class StreamStatus:
    """Snapshot of one stream entry for diagnostics."""

    camera_id: int
    transport: Transport
    descriptor: str
    healthy: bool
    exhausted: bool
    restart_count: int
    pid: int | None
    last_healthy_at: float | None

    @classmethod
    def from_entry(cls, entry: StreamEntry) -> StreamStatus:
        process = entry.process
        return cls(
            camera_id=entry.camera_id,
            transport=entry.transport,
            descriptor=entry.descriptor,
            healthy=entry.healthy,
            exhausted=entry.exhausted,
            restart_count=entry.restart_count,
            pid=process.pid if process is not None else None,
            last_healthy_at=entry.last_healthy_at,
        )
