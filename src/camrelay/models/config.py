"""Configuration models for cameras, transports and supervision policy."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator


class CameraConfig(BaseModel):
    """One RTSP camera known to the relay."""

    model_config = {"extra": "forbid"}

    id: int = Field(ge=0)
    name: str | None = None
    rtsp_url: str | None = None
    rtsp_url_env: str | None = Field(
        default=None,
        description="Environment variable holding the RTSP URL (keeps credentials out of YAML).",
    )

    @field_validator("rtsp_url")
    @classmethod
    def _validate_rtsp_url(cls, value: str | None) -> str | None:
        if value is not None and not value.lower().startswith(("rtsp://", "rtsps://")):
            raise ValueError("rtsp_url must start with rtsp:// or rtsps://")
        return value

    @model_validator(mode="after")
    def _validate_url_source(self) -> CameraConfig:
        if (self.rtsp_url is None) == (self.rtsp_url_env is None):
            raise ValueError("exactly one of rtsp_url or rtsp_url_env is required")
        return self


class HealthPolicyConfig(BaseModel):
    """Restart policy and health thresholds for locally supervised transcoders."""

    model_config = {"extra": "forbid"}

    check_interval_s: float = Field(
        default=10.0,
        gt=0.0,
        description="Seconds between health-check ticks.",
    )
    stale_after_s: float = Field(
        default=20.0,
        gt=0.0,
        description="Output older than this is considered stalled.",
    )
    startup_grace_s: float = Field(
        default=30.0,
        ge=0.0,
        description="Seconds a live process may run without producing output.",
    )
    max_restarts: int = Field(
        default=5,
        ge=0,
        description="Consecutive restarts before a stream is marked exhausted.",
    )


class FfmpegConfig(BaseModel):
    """External transcoder invocation settings."""

    model_config = {"extra": "forbid"}

    binary: str = "ffmpeg"
    kill_timeout_s: float = Field(
        default=5.0,
        gt=0.0,
        description="Seconds to wait after SIGTERM before escalating to SIGKILL.",
    )


class HLSConfig(BaseModel):
    """Process-backed HLS output settings."""

    model_config = {"extra": "forbid"}

    enabled: bool = True
    output_dir: str = "./hls_output"
    public_path: str = "/streams"
    segment_time_s: int = Field(default=2, ge=1)
    list_size: int = Field(default=6, ge=1)
    gop_size: int = Field(default=30, ge=1)
    remove_on_stop: bool = True
    serve_files: bool = Field(
        default=True,
        description="Serve output_dir under public_path from the API server.",
    )


class WebRTCConfig(BaseModel):
    """Process-backed WebRTC output settings."""

    model_config = {"extra": "forbid"}

    enabled: bool = True
    frame_rate: float = Field(default=30.0, gt=0.0)
    bitrate: str = "1M"
    gop_size: int = Field(default=30, ge=1)
    ice_servers: list[str] = Field(default_factory=lambda: ["stun:stun.l.google.com:19302"])
    ready_timeout_s: float = Field(
        default=1.0,
        ge=0.0,
        description="How long a signaling session waits for the camera sink to become ready.",
    )
    ready_poll_interval_s: float = Field(default=0.1, gt=0.0)
    track_queue_size: int = Field(default=4, ge=1)
    signaling_path: str = "/api/v1/streams/{camera_id}/webrtc/ws"


class MJPEGConfig(BaseModel):
    """Per-viewer MJPEG output settings."""

    model_config = {"extra": "forbid"}

    enabled: bool = True
    fps: int = Field(default=15, ge=1)
    width: int = Field(default=1280, ge=16)
    height: int = Field(default=720, ge=16)
    quality: int = Field(default=5, ge=2, le=31)
    chunk_size: int = Field(default=8192, ge=512)
    public_path: str = "/api/v1/streams/{camera_id}/mjpeg"


class MediaServerConfig(BaseModel):
    """Remote media-server (MediaMTX-style) control API settings."""

    model_config = {"extra": "forbid"}

    enabled: bool = False
    host: str = "localhost"
    api_port: int = 9997
    hls_port: int = 8888
    public_host: str | None = None
    request_timeout_s: float = Field(default=10.0, gt=0.0)
    on_demand_start_timeout: str = "10s"
    on_demand_close_after: str = "10s"
    reconcile_interval_s: float = Field(
        default=0.0,
        ge=0.0,
        description="Seconds between remote path reconciliations (0 disables).",
    )

    @property
    def api_base_url(self) -> str:
        return f"http://{self.host}:{self.api_port}"

    @property
    def hls_base_url(self) -> str:
        return f"http://{self.public_host or self.host}:{self.hls_port}"


class ServerConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = {"extra": "forbid"}

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class Config(BaseModel):
    """Root configuration."""

    model_config = {"extra": "forbid"}

    cameras: list[CameraConfig] = Field(default_factory=list)
    server: ServerConfig = Field(default_factory=ServerConfig)
    ffmpeg: FfmpegConfig = Field(default_factory=FfmpegConfig)
    health: HealthPolicyConfig = Field(default_factory=HealthPolicyConfig)
    hls: HLSConfig = Field(default_factory=HLSConfig)
    webrtc: WebRTCConfig = Field(default_factory=WebRTCConfig)
    mjpeg: MJPEGConfig = Field(default_factory=MJPEGConfig)
    media_server: MediaServerConfig = Field(default_factory=MediaServerConfig)

    @model_validator(mode="after")
    def _validate_unique_camera_ids(self) -> Config:
        seen: set[int] = set()
        duplicates: set[int] = set()
        for camera in self.cameras:
            if camera.id in seen:
                duplicates.add(camera.id)
            seen.add(camera.id)
        if duplicates:
            raise ValueError(f"Duplicate camera ids: {sorted(duplicates)}")
        return self

    def get_camera(self, camera_id: int) -> CameraConfig | None:
        for camera in self.cameras:
            if camera.id == camera_id:
                return camera
        return None
