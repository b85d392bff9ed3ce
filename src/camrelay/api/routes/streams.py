"""Stream lifecycle endpoints for every delivery transport."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, WebSocket
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from camrelay.api.dependencies import (
    app_from_state,
    camera_source_url,
    get_relay_app,
    require_service,
)
from camrelay.api.errors import APIError
from camrelay.models.enums import Transport

if TYPE_CHECKING:
    from camrelay.app import Application

router = APIRouter(prefix="/api/v1/streams", tags=["streams"])
logger = logging.getLogger(__name__)

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Accel-Buffering": "no",
}


class StreamStartResponse(BaseModel):
    camera_id: int
    transport: str
    url: str


class WebRTCStartResponse(StreamStartResponse):
    websocket_url: str


class StreamStopResponse(BaseModel):
    camera_id: int
    transport: str
    stopped: bool = True


class StreamHealthResponse(BaseModel):
    camera_id: int
    transport: str
    healthy: bool
    exhausted: bool | None = None
    restart_count: int | None = None
    pid: int | None = None
    last_healthy_at: float | None = None


class StreamHealthListResponse(BaseModel):
    transport: str
    streams: dict[int, bool]


def _websocket_url(request: Request, path: str) -> str:
    forwarded_proto = request.headers.get("x-forwarded-proto", "")
    secure = request.url.scheme == "https" or forwarded_proto.lower() == "https"
    host = request.headers.get("host") or request.url.netloc
    return f"{'wss' if secure else 'ws'}://{host}{path}"


# ----------------------------------------------------------------------
# HLS
# ----------------------------------------------------------------------


@router.get("/hls/health", response_model=StreamHealthListResponse)
async def get_all_hls_health(app: Application = Depends(get_relay_app)) -> StreamHealthListResponse:
    service = require_service(app.hls, Transport.HLS)
    return StreamHealthListResponse(
        transport=Transport.HLS,
        streams=await service.get_all_stream_health(),
    )


@router.post("/{camera_id}/hls", response_model=StreamStartResponse)
async def start_hls_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamStartResponse:
    """Start (or reuse) the camera's HLS transcoder and return its playlist URL."""
    service = require_service(app.hls, Transport.HLS)
    url = await service.start_stream(camera_id, camera_source_url(app, camera_id))
    return StreamStartResponse(camera_id=camera_id, transport=Transport.HLS, url=url)


@router.delete("/{camera_id}/hls", response_model=StreamStopResponse)
async def stop_hls_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamStopResponse:
    service = require_service(app.hls, Transport.HLS)
    await service.stop_stream(camera_id)
    return StreamStopResponse(camera_id=camera_id, transport=Transport.HLS)


@router.get("/{camera_id}/hls/health", response_model=StreamHealthResponse)
async def get_hls_health(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamHealthResponse:
    service = require_service(app.hls, Transport.HLS)
    status = await service.get_stream_status(camera_id)
    return StreamHealthResponse(
        camera_id=camera_id,
        transport=Transport.HLS,
        healthy=status.healthy,
        exhausted=status.exhausted,
        restart_count=status.restart_count,
        pid=status.pid,
        last_healthy_at=status.last_healthy_at,
    )


# ----------------------------------------------------------------------
# WebRTC
# ----------------------------------------------------------------------


@router.post("/{camera_id}/webrtc", response_model=WebRTCStartResponse)
async def start_webrtc_stream(
    camera_id: int,
    request: Request,
    app: Application = Depends(get_relay_app),
) -> WebRTCStartResponse:
    """Start (or reuse) the camera's VP8 pipeline and return its signaling endpoint."""
    service = require_service(app.webrtc, Transport.WEBRTC)
    path = await service.start_stream(camera_id, camera_source_url(app, camera_id))
    return WebRTCStartResponse(
        camera_id=camera_id,
        transport=Transport.WEBRTC,
        url=path,
        websocket_url=_websocket_url(request, path),
    )


@router.delete("/{camera_id}/webrtc", response_model=StreamStopResponse)
async def stop_webrtc_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamStopResponse:
    service = require_service(app.webrtc, Transport.WEBRTC)
    await service.stop_stream(camera_id)
    return StreamStopResponse(camera_id=camera_id, transport=Transport.WEBRTC)


@router.get("/{camera_id}/webrtc/health", response_model=StreamHealthResponse)
async def get_webrtc_health(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamHealthResponse:
    service = require_service(app.webrtc, Transport.WEBRTC)
    status = await service.get_stream_status(camera_id)
    return StreamHealthResponse(
        camera_id=camera_id,
        transport=Transport.WEBRTC,
        healthy=status.healthy,
        exhausted=status.exhausted,
        restart_count=status.restart_count,
        pid=status.pid,
        last_healthy_at=status.last_healthy_at,
    )


@router.websocket("/{camera_id}/webrtc/ws")
async def webrtc_signaling(websocket: WebSocket, camera_id: int) -> None:
    """Signaling channel: offers in, answers out, trickled candidates in."""
    await websocket.accept()
    try:
        app = app_from_state(websocket.app.state)
        manager = require_service(app.signaling, Transport.WEBRTC)
    except APIError as exc:
        await websocket.send_json({"error": str(exc)})
        await websocket.close()
        return
    await manager.handle(camera_id, websocket)


# ----------------------------------------------------------------------
# MJPEG
# ----------------------------------------------------------------------


@router.get("/{camera_id}/mjpeg")
async def get_mjpeg_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamingResponse:
    """Stream multipart JPEG frames from a dedicated transcoder for this viewer."""
    service = require_service(app.mjpeg, Transport.MJPEG)
    await service.start_stream(camera_id, camera_source_url(app, camera_id))
    reader = await service.open_reader(camera_id)
    logger.info(
        "MJPEG stream opened for camera %d",
        camera_id,
        extra={"camera_id": camera_id},
    )
    return StreamingResponse(
        reader.stream(),
        media_type=service.content_type,
        headers=_NO_CACHE_HEADERS,
    )


@router.delete("/{camera_id}/mjpeg", response_model=StreamStopResponse)
async def stop_mjpeg_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamStopResponse:
    service = require_service(app.mjpeg, Transport.MJPEG)
    await service.stop_stream(camera_id)
    return StreamStopResponse(camera_id=camera_id, transport=Transport.MJPEG)


# ----------------------------------------------------------------------
# Delegated media server
# ----------------------------------------------------------------------


@router.post("/{camera_id}/media-server", response_model=StreamStartResponse)
async def start_media_server_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamStartResponse:
    """Configure the camera on the external media server and return its HLS URL."""
    service = require_service(app.media_server, Transport.MEDIA_SERVER)
    url = await service.start_stream(camera_id, camera_source_url(app, camera_id))
    return StreamStartResponse(camera_id=camera_id, transport=Transport.MEDIA_SERVER, url=url)


@router.delete("/{camera_id}/media-server", response_model=StreamStopResponse)
async def stop_media_server_stream(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamStopResponse:
    service = require_service(app.media_server, Transport.MEDIA_SERVER)
    await service.stop_stream(camera_id)
    return StreamStopResponse(camera_id=camera_id, transport=Transport.MEDIA_SERVER)


@router.get("/{camera_id}/media-server/health", response_model=StreamHealthResponse)
async def get_media_server_health(
    camera_id: int,
    app: Application = Depends(get_relay_app),
) -> StreamHealthResponse:
    service = require_service(app.media_server, Transport.MEDIA_SERVER)
    healthy = await service.get_stream_health(camera_id)
    return StreamHealthResponse(
        camera_id=camera_id,
        transport=Transport.MEDIA_SERVER,
        healthy=healthy,
    )
