"""Health endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from camrelay.api.dependencies import get_relay_app

if TYPE_CHECKING:
    from camrelay.app import Application

router = APIRouter(tags=["health"])


class TransportHealth(BaseModel):
    streams: int
    healthy: int


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: float
    transports: dict[str, TransportHealth]


@router.get("/health", response_model=HealthResponse)
async def get_health(app: Application = Depends(get_relay_app)) -> HealthResponse | JSONResponse:
    """Liveness/readiness probe with per-transport stream counts."""
    transports: dict[str, TransportHealth] = {}
    for transport, service in app.stream_services().items():
        health = await service.get_all_stream_health()
        transports[str(transport)] = TransportHealth(
            streams=len(health),
            healthy=sum(1 for ok in health.values() if ok),
        )

    if not app.running:
        status = "unhealthy"
    elif any(t.healthy < t.streams for t in transports.values()):
        status = "degraded"
    else:
        status = "healthy"

    response = HealthResponse(
        status=status,
        uptime_seconds=app.uptime_seconds,
        transports=transports,
    )
    if not app.running:
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))
    return response
