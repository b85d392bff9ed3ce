"""RTSP camera relay serving HLS, WebRTC and MJPEG."""

__version__ = "0.1.0"

# Export commonly used types
from camrelay.errors import (
    FrameContainerError,
    LaunchError,
    RemoteControlError,
    StreamError,
    StreamNotFoundError,
)
from camrelay.models.enums import Transport

__all__ = [
    "FrameContainerError",
    "LaunchError",
    "RemoteControlError",
    "StreamError",
    "StreamNotFoundError",
    "Transport",
    "__version__",
]
