"""Configuration loading for the Yeelight LAN engine."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import tomllib


CONFIG_ENV_PREFIX = "YEELIGHT_LAN_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class Config:
    """Engine configuration."""

    discovery_multicast_address: str = "239.255.255.250"
    discovery_multicast_port: int = 1982
    discovery_timeout: float = 3.0
    discovery_interval: float = 60.0
    discovery_offline_grace: float = 90.0
    discovery_listen_advertisements: bool = True
    device_default_port: int = 55443
    command_timeout: float = 5.0
    command_id_max: int = 2**31 - 1
    session_connect_timeout: float = 5.0
    session_reconnect_base: float = 1.0
    session_reconnect_factor: float = 2.0
    session_reconnect_max: float = 30.0
    session_reconnect_jitter: bool = True
    session_reconnect_attempts: int = 0
    session_queue_depth: int = 256
    session_refresh_on_connect: bool = True
    poll_enabled: bool = True
    poll_interval: float = 60.0
    scene_combined_commands: bool = True
    scene_transition_ms: int = 300
    baseline_brightness: int = 100
    baseline_color_temperature: int = 4000
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    event_queue_size: int = 1000
    persistence_path: Optional[str] = None
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    session_log_level: Optional[str] = None
    scene_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a plain mapping suitable for structured logging."""

        return {field.name: getattr(self, field.name) for field in fields(self)}

    @classmethod
    def from_sources(
        cls,
        path: Optional[Path] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "Config":
        """Load configuration from defaults, file, env, and overrides (in that order)."""

        file_config = _load_file_config(
            path or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, overrides or {})
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("discovery_multicast_port", config.discovery_multicast_port, 1, 65535)
    _validate_range("discovery_timeout", config.discovery_timeout, 0.05, 120.0)
    _validate_range("discovery_interval", config.discovery_interval, 1.0, 86400.0)
    _validate_range("discovery_offline_grace", config.discovery_offline_grace, 1.0, 86400.0)
    _validate_range("device_default_port", config.device_default_port, 1, 65535)
    _validate_range("command_timeout", config.command_timeout, 0.01, 120.0)
    _validate_range("command_id_max", config.command_id_max, 16, 2**31 - 1)
    _validate_range("session_connect_timeout", config.session_connect_timeout, 0.01, 120.0)
    _validate_range("session_reconnect_base", config.session_reconnect_base, 0.0, 60.0)
    _validate_range("session_reconnect_factor", config.session_reconnect_factor, 1.0, 10.0)
    _validate_range("session_reconnect_max", config.session_reconnect_max, 0.01, 3600.0)
    _validate_range("session_reconnect_attempts", config.session_reconnect_attempts, 0, 100000)
    _validate_range("session_queue_depth", config.session_queue_depth, 1, 100000)
    _validate_range("poll_interval", config.poll_interval, 0.05, 86400.0)
    _validate_range("scene_transition_ms", config.scene_transition_ms, 0, 600000)
    _validate_range("baseline_brightness", config.baseline_brightness, 1, 100)
    _validate_range(
        "baseline_color_temperature", config.baseline_color_temperature, 1700, 6500
    )
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    _validate_range("event_queue_size", config.event_queue_size, 1, 1000000)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("discovery_log_level", config.discovery_log_level),
        ("session_log_level", config.session_log_level),
        ("scene_log_level", config.scene_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the engine."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}; got {value}.")


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


_FIELD_TYPES: Dict[str, str] = {field.name: str(field.type) for field in fields(Config)}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in _FIELD_TYPES:
            raise ValueError(f"Unknown configuration key: {key}")
        kind = _FIELD_TYPES[key]
        if kind == "int":
            data[key] = int(value)
        elif kind == "float":
            data[key] = float(value)
        elif kind == "bool":
            data[key] = _coerce_bool(value)
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key.endswith("log_level"):
            data[key] = str(value).upper()
        else:
            data[key] = str(value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None or value == "":
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(path: Optional[Path] = None, **overrides: Any) -> Config:
    """Public helper used by embedding applications."""

    try:
        return Config.from_sources(path, overrides)
    except Exception as exc:  # pragma: no cover - surfaced to the embedding app
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
