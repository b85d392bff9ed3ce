"""Public model exports."""

from camrelay.models.config import (
    CameraConfig,
    Config,
    FfmpegConfig,
    HealthPolicyConfig,
    HLSConfig,
    MediaServerConfig,
    MJPEGConfig,
    ServerConfig,
    WebRTCConfig,
)
from camrelay.models.enums import RestartReason, SessionState, Transport
from camrelay.models.stream import StreamEntry, StreamStatus

__all__ = [
    "CameraConfig",
    "Config",
    "FfmpegConfig",
    "HLSConfig",
    "HealthPolicyConfig",
    "MJPEGConfig",
    "MediaServerConfig",
    "RestartReason",
    "ServerConfig",
    "SessionState",
    "StreamEntry",
    "StreamStatus",
    "Transport",
    "WebRTCConfig",
]
