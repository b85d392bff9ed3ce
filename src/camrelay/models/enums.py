"""Centralized enums for type safety and IDE support."""

from enum import StrEnum


class Transport(StrEnum):
    """Consumer-facing delivery transport of a stream entry."""

    HLS = "hls"
    WEBRTC = "webrtc"
    MJPEG = "mjpeg"
    MEDIA_SERVER = "media_server"


class RestartReason(StrEnum):
    """Why the health monitor decided to restart a transcoder."""

    PROCESS_MISSING = "process_missing"
    PROCESS_DEAD = "process_dead"
    OUTPUT_STALE = "output_stale"
    OUTPUT_MISSING = "output_missing"


class SessionState(StrEnum):
    """Lifecycle state of a WebRTC viewer session."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
