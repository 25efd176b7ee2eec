"""Error taxonomy for the Yeelight LAN engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .scenes import SceneApplyResult


class YeelightError(Exception):
    """Base class for every error raised by the engine."""


class DiscoveryError(YeelightError):
    """A discovery response could not be parsed."""


class DeviceConnectionError(YeelightError, ConnectionError):
    """The socket to a device was refused, reset, or timed out."""

    def __init__(self, device_id: str, message: str) -> None:
        super().__init__(f"{device_id}: {message}")
        self.device_id = device_id


class SessionClosedError(DeviceConnectionError):
    """A pending request was cancelled because its session was closed."""


class ProtocolError(YeelightError):
    """The device answered with an error, or did not answer in time."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message if code is None else f"{message} (code {code})")
        self.code = code
        self.reason = message


class CommandTimeoutError(ProtocolError, TimeoutError):
    """No response arrived within the command timeout."""


class ValidationError(YeelightError, ValueError):
    """Command parameters are out of range; nothing was sent."""


class UnknownDeviceError(YeelightError, KeyError):
    """The device id is not registered with the connection manager."""

    def __str__(self) -> str:
        return f"Unknown device: {self.args[0]}" if self.args else "Unknown device"


class SceneApplyError(YeelightError):
    """One or more devices failed while applying a scene."""

    def __init__(self, result: "SceneApplyResult") -> None:
        failed = ", ".join(
            f"{outcome.device_id}: {outcome.reason}" for outcome in result.failed
        )
        super().__init__(f"Scene {result.scene_name!r} failed on {failed}")
        self.result = result
