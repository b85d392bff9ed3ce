"""Per-transport stream services and their supervision machinery."""

from camrelay.streaming.hls import HLSStreamService
from camrelay.streaming.mjpeg import MJPEGStreamReader, MJPEGStreamService
from camrelay.streaming.monitor import StreamHealthMonitor
from camrelay.streaming.remote import MediaServerService
from camrelay.streaming.signaling import PeerSession, PeerSessionManager
from camrelay.streaming.webrtc import WebRTCStreamService

__all__ = [
    "HLSStreamService",
    "MJPEGStreamReader",
    "MJPEGStreamService",
    "MediaServerService",
    "PeerSession",
    "PeerSessionManager",
    "StreamHealthMonitor",
    "WebRTCStreamService",
]
