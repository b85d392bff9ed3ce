"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import yaml

from camrelay.config import (
    ConfigError,
    ConfigErrorCode,
    load_config,
    load_config_from_dict,
    resolve_camera_url,
    resolve_env_var,
)


def minimal_config() -> dict[str, object]:
    """Return minimal valid config dict."""
    return {
        "cameras": [
            {"id": 1, "name": "front_door", "rtsp_url": "rtsp://192.168.1.10:554/stream1"},
            {"id": 2, "rtsp_url_env": "BACKYARD_RTSP_URL"},
        ],
    }


class TestLoadConfig:
    """Tests for load_config and load_config_from_dict."""

    def test_loads_minimal_config_with_defaults(self, tmp_path: Path) -> None:
        """A minimal file validates and fills transport defaults."""
        # Given: A YAML file with two cameras
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(minimal_config()))
        os.chmod(path, 0o600)

        # When: Loading
        config = load_config(path)

        # Then: Cameras and defaults are present
        assert [camera.id for camera in config.cameras] == [1, 2]
        assert config.hls.public_path == "/streams"
        assert config.health.max_restarts == 5
        assert config.health.check_interval_s == 10.0
        assert config.health.stale_after_s == 20.0
        assert config.health.startup_grace_s == 30.0
        assert config.media_server.enabled is False
        assert config.server.port == 8080

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises FILE_NOT_FOUND."""
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path / "absent.yaml")
        assert exc_info.value.code == ConfigErrorCode.FILE_NOT_FOUND

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Broken YAML raises YAML_INVALID."""
        path = tmp_path / "config.yaml"
        path.write_text("cameras: [unterminated\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(path)
        assert exc_info.value.code == ConfigErrorCode.YAML_INVALID

    def test_empty_file(self, tmp_path: Path) -> None:
        """An empty file raises EMPTY_FILE."""
        path = tmp_path / "config.yaml"
        path.write_text("")
        with pytest.raises(ConfigError) as exc_info:
            load_config(path)
        assert exc_info.value.code == ConfigErrorCode.EMPTY_FILE

    def test_root_must_be_mapping(self, tmp_path: Path) -> None:
        """A YAML list at the root raises ROOT_NOT_MAPPING."""
        path = tmp_path / "config.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(path)
        assert exc_info.value.code == ConfigErrorCode.ROOT_NOT_MAPPING

    def test_permissive_mode_warns(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A world-readable config logs a credentials warning."""
        # Given: A config readable by group and others
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump(minimal_config()))
        os.chmod(path, 0o644)

        # When: Loading
        with caplog.at_level("WARNING"):
            load_config(path)

        # Then: A permission warning is logged
        assert any("too permissive" in r.getMessage() for r in caplog.records)


class TestValidation:
    """Tests for model validation rules."""

    def test_duplicate_camera_ids_rejected(self) -> None:
        """Two cameras with the same id fail validation."""
        data = {
            "cameras": [
                {"id": 1, "rtsp_url": "rtsp://a/1"},
                {"id": 1, "rtsp_url": "rtsp://b/1"},
            ]
        }
        with pytest.raises(ConfigError) as exc_info:
            load_config_from_dict(data)
        assert exc_info.value.code == ConfigErrorCode.VALIDATION_FAILED
        assert "Duplicate camera ids" in str(exc_info.value)

    def test_non_rtsp_url_rejected(self) -> None:
        """Only rtsp:// and rtsps:// sources are accepted."""
        with pytest.raises(ConfigError) as exc_info:
            load_config_from_dict({"cameras": [{"id": 1, "rtsp_url": "http://cam/1"}]})
        assert "rtsp_url" in str(exc_info.value)

    def test_url_source_must_be_exactly_one(self) -> None:
        """A camera needs either an inline URL or an env var, not both or neither."""
        both = {"id": 1, "rtsp_url": "rtsp://a/1", "rtsp_url_env": "CAM_URL"}
        neither = {"id": 2}
        for camera in (both, neither):
            with pytest.raises(ConfigError):
                load_config_from_dict({"cameras": [camera]})

    def test_unknown_keys_rejected(self) -> None:
        """Unknown top-level keys fail validation."""
        with pytest.raises(ConfigError):
            load_config_from_dict({"cameras": [], "surprise": True})

    def test_negative_restart_budget_rejected(self) -> None:
        """max_restarts must be non-negative."""
        with pytest.raises(ConfigError):
            load_config_from_dict({"health": {"max_restarts": -1}})

    def test_get_camera(self) -> None:
        """Cameras are looked up by id."""
        config = load_config_from_dict(minimal_config())
        camera = config.get_camera(1)
        assert camera is not None and camera.name == "front_door"
        assert config.get_camera(42) is None

    def test_media_server_urls(self) -> None:
        """API and public HLS base URLs derive from host and ports."""
        config = load_config_from_dict(
            {"media_server": {"enabled": True, "host": "mtx", "api_port": 9000, "hls_port": 8000}}
        )
        assert config.media_server.api_base_url == "http://mtx:9000"
        assert config.media_server.hls_base_url == "http://mtx:8000"


class TestEnvResolution:
    """Tests for environment-sourced values."""

    def test_resolve_camera_url_inline(self) -> None:
        """Inline URLs are returned as-is."""
        config = load_config_from_dict(minimal_config())
        camera = config.get_camera(1)
        assert camera is not None
        assert resolve_camera_url(camera) == "rtsp://192.168.1.10:554/stream1"

    def test_resolve_camera_url_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """URLs referenced by env var are read at resolution time."""
        monkeypatch.setenv("BACKYARD_RTSP_URL", "rtsp://user:pw@10.0.0.2/live")
        config = load_config_from_dict(minimal_config())
        camera = config.get_camera(2)
        assert camera is not None
        assert resolve_camera_url(camera) == "rtsp://user:pw@10.0.0.2/live"

    def test_missing_env_var_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A required env var that is unset raises ENV_VAR_MISSING."""
        monkeypatch.delenv("BACKYARD_RTSP_URL", raising=False)
        config = load_config_from_dict(minimal_config())
        camera = config.get_camera(2)
        assert camera is not None
        with pytest.raises(ConfigError) as exc_info:
            resolve_camera_url(camera)
        assert exc_info.value.code == ConfigErrorCode.ENV_VAR_MISSING

    def test_optional_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Optional lookups return None when unset."""
        monkeypatch.delenv("CAMRELAY_UNSET", raising=False)
        assert resolve_env_var("CAMRELAY_UNSET", required=False) is None
