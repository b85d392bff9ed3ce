"""FastAPI dependency helpers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, TypeVar, cast

from fastapi import Request, status
from starlette.datastructures import State

from camrelay.api.errors import APIError, APIErrorCode
from camrelay.config.loader import ConfigError, resolve_camera_url
from camrelay.models.enums import Transport

if TYPE_CHECKING:
    from camrelay.app import Application

logger = logging.getLogger(__name__)

ServiceT = TypeVar("ServiceT")


def app_from_state(state: State) -> Application:
    app = cast("Application | None", getattr(state, "camrelay", None))
    if app is None:
        raise APIError(
            "Application not initialized",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code=APIErrorCode.APP_NOT_INITIALIZED,
        )
    return app


async def get_relay_app(request: Request) -> Application:
    """Get the camrelay Application instance from request state."""
    return app_from_state(request.app.state)


def camera_source_url(app: Application, camera_id: int) -> str:
    """Resolve a configured camera id to its RTSP URL."""
    camera = app.config.get_camera(camera_id)
    if camera is None:
        raise APIError(
            f"Camera not found: {camera_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code=APIErrorCode.CAMERA_NOT_FOUND,
        )
    try:
        return resolve_camera_url(camera)
    except ConfigError as exc:
        logger.error(
            "Cannot resolve RTSP URL for camera %d: %s",
            camera_id,
            exc,
            extra={"camera_id": camera_id},
        )
        raise APIError(
            "Camera source is misconfigured",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code=APIErrorCode.CAMERA_CONFIG_INVALID,
        ) from exc


def require_service(service: ServiceT | None, transport: Transport) -> ServiceT:
    if service is None:
        raise APIError(
            f"{transport} streaming is disabled",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code=APIErrorCode.TRANSPORT_DISABLED,
        )
    return service
