"""Shared pytest fixtures for camrelay tests."""

from __future__ import annotations

import sys
from pathlib import Path

# Add src to sys.path for imports
src_path = Path(__file__).parent.parent.parent / "src"
if str(src_path.resolve()) not in sys.path:
    sys.path.insert(0, str(src_path.resolve()))

import pytest

from camrelay.models.config import (
    FfmpegConfig,
    HealthPolicyConfig,
    HLSConfig,
    MJPEGConfig,
    WebRTCConfig,
)
from tests.camrelay.mocks import FakeClock, RecordingProcessFactory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def process_factory() -> RecordingProcessFactory:
    return RecordingProcessFactory()


@pytest.fixture
def ffmpeg_config() -> FfmpegConfig:
    return FfmpegConfig(binary="ffmpeg", kill_timeout_s=1.0)


@pytest.fixture
def policy() -> HealthPolicyConfig:
    return HealthPolicyConfig(
        check_interval_s=10.0,
        stale_after_s=20.0,
        startup_grace_s=30.0,
        max_restarts=5,
    )


@pytest.fixture
def hls_config(tmp_path: Path) -> HLSConfig:
    return HLSConfig(output_dir=str(tmp_path / "hls"), public_path="/streams")


@pytest.fixture
def webrtc_config() -> WebRTCConfig:
    return WebRTCConfig(frame_rate=30.0, ready_timeout_s=0.0, ready_poll_interval_s=0.01)


@pytest.fixture
def mjpeg_config() -> MJPEGConfig:
    return MJPEGConfig(chunk_size=512)
