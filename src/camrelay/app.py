"""Main application that wires all components together."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from camrelay.api import APIServer, create_app
from camrelay.config import load_config
from camrelay.models.enums import Transport
from camrelay.streaming.hls import HLSStreamService
from camrelay.streaming.mjpeg import MJPEGStreamService
from camrelay.streaming.monitor import StreamHealthMonitor
from camrelay.streaming.remote import MediaServerService
from camrelay.streaming.signaling import PeerSessionManager
from camrelay.streaming.webrtc import WebRTCStreamService

if TYPE_CHECKING:
    from camrelay.models.config import Config

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates all components.

    Handles component creation, lifecycle, and graceful shutdown.
    """

    def __init__(self, config_path: Path | None = None, *, config: Config | None = None) -> None:
        """Initialize application from a config file path or an already-loaded config."""
        if config_path is None and config is None:
            raise ValueError("config_path or config is required")
        self._config_path = config_path
        self._config: Config | None = config

        # Components (created in _create_components)
        self._hls: HLSStreamService | None = None
        self._webrtc: WebRTCStreamService | None = None
        self._signaling: PeerSessionManager | None = None
        self._mjpeg: MJPEGStreamService | None = None
        self._media_server: MediaServerService | None = None
        self._monitors: list[StreamHealthMonitor] = []
        self._api_server: APIServer | None = None
        self._start_time: float | None = None

        # Shutdown state
        self._shutdown_event = asyncio.Event()
        self._shutdown_started = False

    async def run(self) -> None:
        """Run the application until a shutdown signal arrives."""
        logger.info("Starting camrelay...")

        if self._config is None:
            assert self._config_path is not None
            self._config = load_config(self._config_path)
            logger.info("Config loaded from %s", self._config_path)

        self.create_components()
        self._setup_signal_handlers()
        await self.start()

        logger.info(
            "Application started with %d camera(s). Waiting for stream requests...",
            len(self.config.cameras),
        )
        await self._shutdown_event.wait()
        await self.shutdown()

    def create_components(self) -> None:
        """Create stream services and monitors based on config."""
        config = self._require_config()

        if config.hls.enabled:
            self._hls = HLSStreamService(config.hls, ffmpeg=config.ffmpeg, policy=config.health)
            self._monitors.append(StreamHealthMonitor(self._hls))

        if config.webrtc.enabled:
            self._webrtc = WebRTCStreamService(
                config.webrtc, ffmpeg=config.ffmpeg, policy=config.health
            )
            self._signaling = PeerSessionManager(self._webrtc, config.webrtc)
            self._monitors.append(StreamHealthMonitor(self._webrtc))

        if config.mjpeg.enabled:
            self._mjpeg = MJPEGStreamService(config.mjpeg, ffmpeg=config.ffmpeg)

        if config.media_server.enabled:
            self._media_server = MediaServerService(config.media_server)

        server_cfg = config.server
        if server_cfg.enabled:
            self._api_server = APIServer(
                app=create_app(self),
                host=server_cfg.host,
                port=server_cfg.port,
            )

        logger.info(
            "Components created: transports=%s",
            ",".join(str(t) for t in self.enabled_transports()) or "none",
        )

    async def start(self) -> None:
        for monitor in self._monitors:
            monitor.start()
        if self._media_server is not None:
            self._media_server.start_reconciler()
        if self._api_server is not None:
            await self._api_server.start()
        self._start_time = time.time()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signal."""
        if self._shutdown_started:
            logger.warning("Shutdown already in progress, ignoring signal")
            return

        logger.info("Received signal %s, initiating shutdown...", sig.name)
        self._shutdown_started = True
        self._shutdown_event.set()

    def request_shutdown(self) -> None:
        self._shutdown_started = True
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Graceful shutdown of all components."""
        logger.info("Shutting down application...")
        self._shutdown_event.set()

        # Stop API server first to prevent new requests during shutdown.
        if self._api_server:
            await self._api_server.stop()

        for monitor in self._monitors:
            await monitor.stop()

        # Every transcoder is stopped and reaped before returning.
        for service in (self._hls, self._webrtc, self._mjpeg):
            if service is None:
                continue
            try:
                await service.shutdown()
            except Exception as exc:
                logger.error(
                    "Failed to shut down %s streams: %s", service.transport, exc, exc_info=exc
                )

        if self._media_server:
            await self._media_server.shutdown()

        logger.info("Application shutdown complete")

    def _require_config(self) -> Config:
        if self._config is None:
            raise RuntimeError("Config not loaded")
        return self._config

    def enabled_transports(self) -> list[Transport]:
        services: dict[Transport, object | None] = {
            Transport.HLS: self._hls,
            Transport.WEBRTC: self._webrtc,
            Transport.MJPEG: self._mjpeg,
            Transport.MEDIA_SERVER: self._media_server,
        }
        return [transport for transport, service in services.items() if service is not None]

    def stream_services(self) -> dict[Transport, Any]:
        """Services whose streams report health (MJPEG only tracks attached viewers)."""
        services: dict[Transport, Any] = {}
        if self._hls is not None:
            services[Transport.HLS] = self._hls
        if self._webrtc is not None:
            services[Transport.WEBRTC] = self._webrtc
        if self._media_server is not None:
            services[Transport.MEDIA_SERVER] = self._media_server
        return services

    @property
    def config(self) -> Config:
        return self._require_config()

    @property
    def hls(self) -> HLSStreamService | None:
        return self._hls

    @property
    def webrtc(self) -> WebRTCStreamService | None:
        return self._webrtc

    @property
    def signaling(self) -> PeerSessionManager | None:
        return self._signaling

    @property
    def mjpeg(self) -> MJPEGStreamService | None:
        return self._mjpeg

    @property
    def media_server(self) -> MediaServerService | None:
        return self._media_server

    @property
    def running(self) -> bool:
        return self._start_time is not None and not self._shutdown_event.is_set()

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time
