"""Error hierarchy for camrelay stream services."""

from __future__ import annotations


class StreamError(Exception):
    """Base exception for all stream lifecycle errors.

    Carries the camera and transport the failing operation referenced.
    Preserves stack traces via exception chaining.
    """

    def __init__(
        self,
        message: str,
        *,
        camera_id: int | None,
        transport: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.camera_id = camera_id
        self.transport = transport
        self.cause = cause
        self.__cause__ = cause  # Python's exception chaining


class StreamNotFoundError(StreamError):
    """Operation referenced a camera with no active stream entry."""

    def __init__(self, camera_id: int, transport: str) -> None:
        super().__init__(
            f"stream not found for camera {camera_id}",
            camera_id=camera_id,
            transport=transport,
        )


class LaunchError(StreamError):
    """Transcoder binary unresolvable or process failed to start."""


class FrameContainerError(StreamError):
    """Transcoder output is not a readable frame container."""


class RemoteControlError(StreamError):
    """Remote media-server control API returned an error or was unreachable."""

    def __init__(
        self,
        message: str,
        *,
        camera_id: int | None,
        transport: str,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, camera_id=camera_id, transport=transport, cause=cause)
        self.status_code = status_code
