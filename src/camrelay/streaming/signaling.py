"""WebSocket signaling for WebRTC viewers of a camera's shared sample sink."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from camrelay.models.config import WebRTCConfig
from camrelay.models.enums import SessionState
from camrelay.streaming.sink import SinkTrack, VideoSampleSink
from camrelay.streaming.webrtc import WebRTCStreamService

logger = logging.getLogger(__name__)

PREFERRED_VIDEO_CODEC = "video/vp8"


class SignalingChannel(Protocol):
    """Bidirectional JSON message channel (a WebSocket in production)."""

    async def receive_json(self) -> Any: ...

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


PeerConnectionFactory = Callable[[RTCConfiguration], RTCPeerConnection]


def _default_peer_factory(configuration: RTCConfiguration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


def parse_ice_candidate(payload: Any) -> Any | None:
    """Build an aiortc candidate from a browser `RTCIceCandidateInit` payload.

    Returns None for the end-of-candidates marker.

    Raises:
        ValueError: If the payload is not a candidate description
    """
    if isinstance(payload, str):
        payload = {"candidate": payload}
    if not isinstance(payload, dict):
        raise ValueError(f"unsupported candidate payload: {type(payload).__name__}")

    raw = str(payload.get("candidate") or "").strip()
    if not raw:
        return None
    if raw.startswith("candidate:"):
        raw = raw[len("candidate:") :]
    candidate = candidate_from_sdp(raw)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def prefer_codec(pc: RTCPeerConnection, mime_type: str = PREFERRED_VIDEO_CODEC) -> bool:
    """Order the video transceivers' codecs so `mime_type` is negotiated first."""
    capabilities = RTCRtpSender.getCapabilities("video")
    preferred = [c for c in capabilities.codecs if c.mimeType.lower() == mime_type]
    if not preferred:
        return False
    rtx = [c for c in capabilities.codecs if c.mimeType.lower() == "video/rtx"]
    applied = False
    for transceiver in pc.getTransceivers():
        if getattr(transceiver, "kind", None) != "video":
            continue
        transceiver.setCodecPreferences(preferred + rtx)
        applied = True
    return applied


class PeerSession:
    """One viewer: a signaling channel plus the peer connection it negotiates.

    `close()` is idempotent; the session is removed from its camera exactly once
    whichever of the channel, the peer connection or the track ends first.
    """

    def __init__(
        self,
        *,
        camera_id: int,
        channel: SignalingChannel,
        pc: RTCPeerConnection,
        track: SinkTrack,
        on_closed: Callable[[PeerSession], Awaitable[None]],
    ) -> None:
        self.session_id = uuid.uuid4().hex
        self.camera_id = camera_id
        self.state = SessionState.CONNECTING
        self._channel = channel
        self._pc = pc
        self._track = track
        self._on_closed = on_closed

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def bind_events(self) -> None:
        pc = self._pc

        @pc.on("connectionstatechange")
        async def _on_connection_state_change() -> None:
            state = pc.connectionState
            logger.info(
                "WebRTC connection state for camera %d session %s: %s",
                self.camera_id,
                self.session_id,
                state,
                extra={"camera_id": self.camera_id},
            )
            if state in ("failed", "closed"):
                await self.close()

        @self._track.on("ended")
        async def _on_track_ended() -> None:
            await self.close()

    async def run(self) -> None:
        """Read signaling messages until the channel ends or the session closes."""
        try:
            while not self.closed:
                try:
                    message = await self._channel.receive_json()
                except Exception as exc:
                    logger.info(
                        "Signaling channel for camera %d session %s ended: %s",
                        self.camera_id,
                        self.session_id,
                        exc or type(exc).__name__,
                        extra={"camera_id": self.camera_id},
                    )
                    break
                if not isinstance(message, dict):
                    await self.send({"error": "signaling messages must be JSON objects"})
                    continue
                await self.handle_message(message)
        finally:
            await self.close()

    async def handle_message(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "offer":
            await self._handle_offer(message)
        elif msg_type == "ice-candidate":
            await self._handle_candidate(message.get("candidate"))
        else:
            logger.debug(
                "Ignoring signaling message type %r for camera %d",
                msg_type,
                self.camera_id,
                extra={"camera_id": self.camera_id},
            )

    async def send(self, payload: dict[str, Any]) -> bool:
        try:
            await self._channel.send_json(payload)
        except Exception as exc:
            logger.debug(
                "Failed to send signaling message for camera %d: %s",
                self.camera_id,
                exc,
                extra={"camera_id": self.camera_id},
            )
            return False
        return True

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        self._track.stop()
        try:
            await self._pc.close()
        except Exception as exc:
            logger.warning(
                "Error closing peer connection for camera %d: %s",
                self.camera_id,
                exc,
                extra={"camera_id": self.camera_id},
            )
        try:
            await self._channel.close()
        except Exception as exc:
            logger.debug("Signaling channel already closed: %s", exc)
        await self._on_closed(self)
        logger.info(
            "WebRTC session %s closed for camera %d",
            self.session_id,
            self.camera_id,
            extra={"camera_id": self.camera_id},
        )

    async def _handle_offer(self, message: dict[str, Any]) -> None:
        sdp = message.get("sdp")
        if not isinstance(sdp, str) or not sdp:
            await self.send({"error": "offer is missing sdp"})
            return
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        except Exception as exc:
            await self.send({"error": f"Failed to set remote description: {exc}"})
            return
        try:
            answer = await self._pc.createAnswer()
        except Exception as exc:
            await self.send({"error": f"Failed to create answer: {exc}"})
            return
        try:
            await self._pc.setLocalDescription(answer)
        except Exception as exc:
            await self.send({"error": f"Failed to set local description: {exc}"})
            return

        # aiortc gathers candidates before resolving setLocalDescription, so
        # the local description already carries them.
        local = self._pc.localDescription or answer
        if await self.send({"type": "answer", "sdp": local.sdp}) and not self.closed:
            self.state = SessionState.ACTIVE

    async def _handle_candidate(self, payload: Any) -> None:
        try:
            candidate = parse_ice_candidate(payload)
        except Exception as exc:
            logger.warning(
                "Error parsing ICE candidate for camera %d: %s",
                self.camera_id,
                exc,
                extra={"camera_id": self.camera_id},
            )
            return
        if candidate is None:
            return
        try:
            await self._pc.addIceCandidate(candidate)
        except Exception as exc:
            logger.warning(
                "Error adding ICE candidate for camera %d: %s",
                self.camera_id,
                exc,
                extra={"camera_id": self.camera_id},
            )


class PeerSessionManager:
    """Attaches viewers to running WebRTC streams."""

    def __init__(
        self,
        service: WebRTCStreamService,
        config: WebRTCConfig,
        *,
        peer_factory: PeerConnectionFactory = _default_peer_factory,
    ) -> None:
        self._service = service
        self._config = config
        self._peer_factory = peer_factory

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self._config.ice_servers]
        )

    async def handle(self, camera_id: int, channel: SignalingChannel) -> None:
        """Serve one viewer until its session closes."""
        if not await self._service.has_stream(camera_id):
            await self._reject(channel, camera_id, "Stream not found. Please start stream first.")
            return

        sink = await self._wait_for_sink(camera_id)
        if sink is None:
            await self._reject(channel, camera_id, "Stream not ready. Please retry shortly.")
            return

        try:
            track = sink.subscribe()
        except RuntimeError as exc:
            await self._reject(channel, camera_id, str(exc))
            return

        pc = self._peer_factory(self.rtc_configuration())
        try:
            pc.addTrack(track)
            prefer_codec(pc)
        except Exception as exc:
            track.stop()
            await pc.close()
            await self._reject(channel, camera_id, f"Failed to add track: {exc}")
            return

        session = PeerSession(
            camera_id=camera_id,
            channel=channel,
            pc=pc,
            track=track,
            on_closed=self._on_session_closed,
        )
        if not await self._service.add_session(camera_id, session):
            await session.close()
            return
        session.bind_events()
        logger.info(
            "WebRTC session %s opened for camera %d",
            session.session_id,
            camera_id,
            extra={"camera_id": camera_id},
        )
        await session.run()

    async def _wait_for_sink(self, camera_id: int) -> VideoSampleSink | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.ready_timeout_s
        while True:
            sink = await self._service.get_sink(camera_id)
            if sink is not None:
                return sink
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(self._config.ready_poll_interval_s)

    async def _on_session_closed(self, session: PeerSession) -> None:
        await self._service.remove_session(session.camera_id, session.session_id)

    async def _reject(self, channel: SignalingChannel, camera_id: int, message: str) -> None:
        logger.info(
            "Rejecting WebRTC viewer for camera %d: %s",
            camera_id,
            message,
            extra={"camera_id": camera_id},
        )
        try:
            await channel.send_json({"error": message})
        except Exception as exc:
            logger.debug("Failed to send rejection to viewer: %s", exc)
        try:
            await channel.close()
        except Exception as exc:
            logger.debug("Signaling channel already closed: %s", exc)
