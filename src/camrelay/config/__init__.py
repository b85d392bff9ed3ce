"""Configuration loading and validation."""

from camrelay.config.loader import (
    ConfigError,
    ConfigErrorCode,
    load_config,
    load_config_from_dict,
    resolve_camera_url,
    resolve_env_var,
)

__all__ = [
    "ConfigError",
    "ConfigErrorCode",
    "load_config",
    "load_config_from_dict",
    "resolve_camera_url",
    "resolve_env_var",
]
