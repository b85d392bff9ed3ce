"""Removal of HLS segments the playlist no longer references."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from camrelay.streaming.ffmpeg import HLS_SEGMENT_SUFFIX

logger = logging.getLogger(__name__)


def referenced_segments(playlist_text: str) -> set[str]:
    """Return basenames of the media segments listed in an m3u8 playlist."""
    names: set[str] = set()
    for raw_line in playlist_text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.endswith(HLS_SEGMENT_SUFFIX):
            # Entries may be bare names, relative paths or URLs.
            names.add(PurePosixPath(line.replace("\\", "/")).name)
    return names


class SegmentGarbageCollector:
    """Deletes orphaned `.ts` files next to a playlist.

    Safety net for when ffmpeg's `delete_segments` flag under-deletes. A file
    the current playlist references is never removed, and an unreadable
    playlist skips the cycle.
    """

    def collect(self, playlist_path: Path, *, camera_id: int | None = None) -> int:
        try:
            playlist_text = playlist_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return 0

        active = referenced_segments(playlist_text)
        try:
            candidates = list(playlist_path.parent.iterdir())
        except OSError:
            return 0

        deleted = 0
        for path in candidates:
            if not path.name.endswith(HLS_SEGMENT_SUFFIX) or path.name in active:
                continue
            if not path.is_file():
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to delete orphaned segment %s: %s", path, exc)
                continue
            deleted += 1

        if deleted:
            logger.info(
                "Deleted %d orphaned segment(s) for camera %s",
                deleted,
                camera_id if camera_id is not None else "-",
                extra={"camera_id": camera_id},
            )
        return deleted
