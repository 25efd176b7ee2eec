"""Device, state, and scene models shared across the engine."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:  # pragma: no cover
    from .effects import FlowEffect


DEFAULT_PORT = 55443


class ColorMode(IntEnum):
    """Color mode reported by the device's ``color_mode`` property."""

    RGB = 1
    TEMPERATURE = 2
    HSV = 3


@dataclass(frozen=True)
class Capabilities:
    """What a device model can do."""

    brightness: bool = True
    color_temperature: bool = False
    rgb: bool = False
    hsv: bool = False
    flow: bool = False
    scene: bool = False

    @classmethod
    def from_support(cls, model: Optional[str], support: FrozenSet[str]) -> "Capabilities":
        """Derive capabilities from the advertised method list, falling back to the model."""

        if support:
            return cls(
                brightness="set_bright" in support,
                color_temperature="set_ct_abx" in support,
                rgb="set_rgb" in support,
                hsv="set_hsv" in support,
                flow="start_cf" in support,
                scene="set_scene" in support,
            )
        return _MODEL_CAPABILITIES.get(_model_family(model), cls())


def _model_family(model: Optional[str]) -> str:
    lowered = (model or "").lower()
    for family in ("color", "stripe", "strip", "bslamp", "ceiling", "desklamp", "ct_bulb", "mono"):
        if family in lowered:
            return family
    return "unknown"


_FULL_COLOR = Capabilities(
    brightness=True, color_temperature=True, rgb=True, hsv=True, flow=True, scene=True
)
_WHITE_TUNABLE = Capabilities(
    brightness=True, color_temperature=True, flow=True, scene=True
)
_MODEL_CAPABILITIES: Dict[str, Capabilities] = {
    "color": _FULL_COLOR,
    "stripe": _FULL_COLOR,
    "strip": _FULL_COLOR,
    "bslamp": _FULL_COLOR,
    "ceiling": _WHITE_TUNABLE,
    "desklamp": _WHITE_TUNABLE,
    "ct_bulb": _WHITE_TUNABLE,
    "mono": Capabilities(brightness=True, flow=True, scene=True),
}


@dataclass(frozen=True)
class DeviceDescriptor:
    """Identity and capabilities of one light, as reported by discovery."""

    id: str
    ip: str
    port: int = DEFAULT_PORT
    model: Optional[str] = None
    fw_ver: Optional[str] = None
    support: FrozenSet[str] = frozenset()
    name: Optional[str] = None
    last_seen: float = field(default_factory=time.time, compare=False)

    @property
    def capabilities(self) -> Capabilities:
        return Capabilities.from_support(self.model, self.support)

    def supports(self, method: str) -> bool:
        """Return whether ``method`` may be sent; unknown support lists allow everything."""

        return not self.support or method in self.support

    def seen(self, at: Optional[float] = None) -> "DeviceDescriptor":
        return replace(self, last_seen=time.time() if at is None else at)


STATE_FIELDS: Tuple[str, ...] = (
    "power",
    "brightness",
    "color_mode",
    "rgb",
    "ct",
    "hue",
    "sat",
    "flowing",
    "online",
    "name",
)


@dataclass
class DeviceState:
    """Last-known state of one device.

    ``stamps`` holds a monotonic timestamp per field; the state cache uses it
    to resolve concurrent writes so the most recent value always wins.
    """

    power: bool = False
    brightness: int = 100
    color_mode: ColorMode = ColorMode.TEMPERATURE
    rgb: int = 0xFFFFFF
    ct: int = 4000
    hue: int = 0
    sat: int = 0
    flowing: bool = False
    online: bool = False
    name: Optional[str] = None
    updated_at: float = field(default_factory=time.time)
    stamps: Dict[str, float] = field(default_factory=dict, repr=False, compare=False)

    def values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in STATE_FIELDS}

    def copy(self) -> "DeviceState":
        return replace(self, stamps=dict(self.stamps))

    def matches(self, desired: Mapping[str, Any]) -> bool:
        return all(getattr(self, key) == value for key, value in desired.items())


@dataclass(frozen=True)
class StateUpdate:
    """A set of field values for one device from one source.

    ``source`` is ``"notification"``, ``"ack"``, ``"poll"``, ``"optimistic"``,
    ``"revert"``, ``"discovery"`` or ``"connection"``.
    """

    device_id: str
    fields: Mapping[str, Any]
    source: str
    stamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class StateChange:
    """Published by the state cache whenever a device's state actually changes."""

    device_id: str
    state: DeviceState
    changed: Tuple[str, ...]
    source: str


@dataclass(frozen=True)
class DesiredState:
    """Target state for one device inside a scene."""

    power: Optional[bool] = None
    brightness: Optional[int] = None
    ct: Optional[int] = None
    rgb: Optional[Tuple[int, int, int]] = None
    hue: Optional[int] = None
    sat: Optional[int] = None
    transition_ms: Optional[int] = None

    def __post_init__(self) -> None:
        colors = sum(1 for value in (self.ct, self.rgb, self.hue) if value is not None)
        if colors > 1:
            raise ValueError("DesiredState accepts at most one of ct, rgb, or hue/sat")
        if (self.hue is None) != (self.sat is None):
            raise ValueError("hue and sat must be given together")

    @property
    def color_mode(self) -> Optional[ColorMode]:
        if self.rgb is not None:
            return ColorMode.RGB
        if self.ct is not None:
            return ColorMode.TEMPERATURE
        if self.hue is not None:
            return ColorMode.HSV
        return None

    def state_fields(self) -> Dict[str, Any]:
        """The device state fields this target implies."""

        result: Dict[str, Any] = {}
        if self.power is not None:
            result["power"] = self.power
        if self.power is False:
            return result
        if self.brightness is not None:
            result["brightness"] = self.brightness
        mode = self.color_mode
        if mode is not None:
            result["color_mode"] = mode
            result["flowing"] = False
        if self.rgb is not None:
            red, green, blue = self.rgb
            result["rgb"] = (red << 16) | (green << 8) | blue
        if self.ct is not None:
            result["ct"] = self.ct
        if self.hue is not None:
            result["hue"] = self.hue
            result["sat"] = self.sat
        return result

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.name] = list(value) if isinstance(value, tuple) else value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DesiredState":
        values = dict(data)
        if values.get("rgb") is not None:
            values["rgb"] = tuple(int(channel) for channel in values["rgb"])
        return cls(**values)


class SceneStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    ACTIVE = "active"
    FAILED = "failed"


SceneTarget = Union[DesiredState, "FlowEffect"]


@dataclass
class Scene:
    """Named set of per-device targets.

    Scenes are created and stored by the embedding application; the
    orchestrator only reads ``targets`` and updates ``status``.
    """

    name: str
    targets: Dict[str, SceneTarget] = field(default_factory=dict)
    status: SceneStatus = SceneStatus.INACTIVE
