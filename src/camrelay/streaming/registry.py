"""Lock-guarded registry of active stream entries for one transport."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from typing import Generic, TypeVar

from camrelay.models.stream import StreamEntry

EntryT = TypeVar("EntryT", bound=StreamEntry)


class StreamRegistry(Generic[EntryT]):
    """Mapping of camera id to stream entry.

    Every mutation, and every read of per-entry state, happens while holding
    `lock`. The registry is owned by one transport service and passed to the
    collaborators that need it.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._entries: dict[int, EntryT] = {}

    def get(self, camera_id: int) -> EntryT | None:
        return self._entries.get(camera_id)

    def insert(self, entry: EntryT) -> None:
        if entry.camera_id in self._entries:
            raise KeyError(f"stream entry already registered for camera {entry.camera_id}")
        self._entries[entry.camera_id] = entry

    def remove(self, camera_id: int) -> EntryT | None:
        return self._entries.pop(camera_id, None)

    def owns(self, entry: EntryT) -> bool:
        """Return True when `entry` is still the registered entry for its camera."""
        return self._entries.get(entry.camera_id) is entry

    def entries(self) -> list[EntryT]:
        return list(self._entries.values())

    def camera_ids(self) -> list[int]:
        return list(self._entries)

    def __contains__(self, camera_id: object) -> bool:
        return camera_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[EntryT]:
        return iter(self.entries())
