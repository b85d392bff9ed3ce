"""API route registration."""

from __future__ import annotations

from fastapi import FastAPI

from camrelay.api.routes import health, streams


def register_routes(app: FastAPI) -> None:
    """Register all API routers."""
    app.include_router(health.router)
    app.include_router(streams.router)
