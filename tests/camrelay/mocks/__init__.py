"""Mock implementations for testing."""

from tests.camrelay.mocks.clock import FakeClock
from tests.camrelay.mocks.process import (
    FakeTranscoderProcess,
    RecordingProcessFactory,
    found_binary,
    missing_binary,
)
from tests.camrelay.mocks.signaling import FakeChannel, FakePeerConnection

__all__ = [
    "FakeChannel",
    "FakeClock",
    "FakePeerConnection",
    "FakeTranscoderProcess",
    "RecordingProcessFactory",
    "found_binary",
    "missing_binary",
]
