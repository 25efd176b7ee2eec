"""Core package for the Yeelight LAN engine - discovery, sessions, scenes and state for Yeelight lights."""

from .config import Config, load_config
from .engine import YeelightEngine
from .errors import (
    CommandTimeoutError,
    DeviceConnectionError,
    DiscoveryError,
    ProtocolError,
    SceneApplyError,
    SessionClosedError,
    UnknownDeviceError,
    ValidationError,
    YeelightError,
)
from .models import DesiredState, DeviceDescriptor, DeviceState, Scene

__all__ = [
    "config",
    "logging",
    "codec",
    "discovery",
    "session",
    "manager",
    "effects",
    "scenes",
    "state",
    "Config",
    "load_config",
    "YeelightEngine",
    "DesiredState",
    "DeviceDescriptor",
    "DeviceState",
    "Scene",
    "YeelightError",
    "DiscoveryError",
    "DeviceConnectionError",
    "SessionClosedError",
    "ProtocolError",
    "CommandTimeoutError",
    "ValidationError",
    "UnknownDeviceError",
    "SceneApplyError",
]
__version__ = "1.0.0"
