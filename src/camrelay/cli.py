"""CLI entrypoint for the camrelay server."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

import fire  # type: ignore[import-untyped]

from camrelay.app import Application
from camrelay.config import ConfigError, load_config, resolve_camera_url
from camrelay.logging_setup import configure_logging
from camrelay.streaming.ffmpeg import redact_rtsp_url, resolve_binary


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for CLI."""
    configure_logging(log_level=level)


class CamRelay:
    """camrelay CLI - RTSP camera relay for HLS, WebRTC and MJPEG."""

    def run(self, config: str, log_level: str = "INFO") -> None:
        """Run the relay server.

        Args:
            config: Path to YAML config file
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        setup_logging(log_level)

        app = Application(Path(config))

        try:
            asyncio.run(app.run())
        except ConfigError as e:
            print(f"✗ Config invalid: {e}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            pass  # Handled by signal handlers

    def validate(self, config: str) -> None:
        """Validate config file without running.

        Args:
            config: Path to YAML config file
        """
        config_path = Path(config)

        try:
            cfg = load_config(config_path)
            sources = {camera.id: resolve_camera_url(camera) for camera in cfg.cameras}
        except ConfigError as e:
            print(f"✗ Config invalid: {e}", file=sys.stderr)
            sys.exit(1)

        print(f"✓ Config valid: {config_path}")
        print(f"  Cameras: {sorted(sources)}")
        for camera_id, url in sorted(sources.items()):
            print(f"    {camera_id}: {redact_rtsp_url(url)}")
        print(f"  HLS enabled: {cfg.hls.enabled} (output_dir={cfg.hls.output_dir})")
        print(f"  WebRTC enabled: {cfg.webrtc.enabled}")
        print(f"  MJPEG enabled: {cfg.mjpeg.enabled}")
        print(f"  Media server enabled: {cfg.media_server.enabled}")
        if resolve_binary(cfg.ffmpeg.binary) is None:
            print(f"  ! {cfg.ffmpeg.binary} not found on PATH", file=sys.stderr)


def main() -> None:
    """Main CLI entrypoint."""
    # Strip --help/-h when it's the only arg so Fire shows its commands list
    if len(sys.argv) == 2 and sys.argv[1] in ("--help", "-h"):
        sys.argv.pop()
    fire.Fire(CamRelay)


if __name__ == "__main__":
    main()
