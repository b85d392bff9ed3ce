"""ffmpeg argument profiles for each delivery transport."""

from __future__ import annotations

import logging
import shlex
import shutil
from collections.abc import Sequence
from pathlib import Path

from camrelay.models.config import HLSConfig, MJPEGConfig, WebRTCConfig

logger = logging.getLogger(__name__)

HLS_PLAYLIST_NAME = "playlist.m3u8"
HLS_SEGMENT_PATTERN = "segment_%03d.ts"
HLS_SEGMENT_SUFFIX = ".ts"
MJPEG_BOUNDARY = "ffmpeg"

_INPUT_ARGS = ("-rtsp_transport", "tcp")


def resolve_binary(binary: str) -> str | None:
    """Return the absolute path of `binary`, or None when it is not installed."""
    return shutil.which(binary)


def redact_rtsp_url(url: str) -> str:
    if "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    if "@" not in rest:
        return url
    _creds, host = rest.split("@", 1)
    return f"{scheme}://***:***@{host}"


def format_cmd(cmd: Sequence[str]) -> str:
    safe = [redact_rtsp_url(str(x)) for x in cmd]
    try:
        return shlex.join(safe)
    except Exception as exc:
        logger.warning("Failed to format command with shlex.join: %s", exc, exc_info=True)
        return " ".join(safe)


def build_hls_command(
    binary: str,
    rtsp_url: str,
    playlist_path: Path,
    config: HLSConfig,
) -> list[str]:
    """Low-latency HLS profile writing a rolling playlist next to its segments."""
    segment_path = playlist_path.parent / HLS_SEGMENT_PATTERN
    gop = str(config.gop_size)
    return [
        binary,
        *_INPUT_ARGS,
        "-i",
        rtsp_url,
        "-c:v",
        "libx264",
        "-preset",
        "ultrafast",
        "-tune",
        "zerolatency",
        "-g",
        gop,
        "-keyint_min",
        gop,
        "-sc_threshold",
        "0",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-f",
        "hls",
        "-hls_time",
        str(config.segment_time_s),
        "-hls_list_size",
        str(config.list_size),
        "-hls_flags",
        "delete_segments+program_date_time+independent_segments+omit_endlist",
        "-hls_playlist_type",
        "event",
        "-hls_segment_type",
        "mpegts",
        "-hls_segment_filename",
        str(segment_path),
        "-start_number",
        "0",
        "-hls_allow_cache",
        "0",
        str(playlist_path),
    ]


def build_webrtc_command(binary: str, rtsp_url: str, config: WebRTCConfig) -> list[str]:
    """Realtime VP8 encode wrapped in IVF on stdout."""
    gop = str(config.gop_size)
    return [
        binary,
        *_INPUT_ARGS,
        "-loglevel",
        "warning",
        "-i",
        rtsp_url,
        "-an",
        "-c:v",
        "libvpx",
        "-deadline",
        "realtime",
        "-cpu-used",
        "8",
        "-b:v",
        config.bitrate,
        "-maxrate",
        config.bitrate,
        "-bufsize",
        "2M",
        "-g",
        gop,
        "-keyint_min",
        gop,
        "-f",
        "ivf",
        "-",
    ]


def build_mjpeg_command(binary: str, rtsp_url: str, config: MJPEGConfig) -> list[str]:
    """Fixed rate and resolution multipart JPEG stream on stdout."""
    return [
        binary,
        *_INPUT_ARGS,
        "-loglevel",
        "error",
        "-i",
        rtsp_url,
        "-an",
        "-vf",
        f"fps={config.fps},scale={config.width}:{config.height}",
        "-q:v",
        str(config.quality),
        "-f",
        "mpjpeg",
        "-boundary_tag",
        MJPEG_BOUNDARY,
        "-",
    ]
