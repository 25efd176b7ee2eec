"""Color flow encoding and validated command builders.

A flow expression is a flat, comma-joined list of ``duration,mode,value,brightness``
tuples. Device firmware parses it positionally, so the mode numbers and the
field order below are fixed by the protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .codec import GET_PROP_FIELDS, Command, Param
from .errors import ValidationError

MIN_TRANSITION_MS = 50
MIN_SMOOTH_MS = 30
BRIGHTNESS_UNCHANGED = -1


class FlowMode(IntEnum):
    COLOR = 1
    TEMPERATURE = 2
    SLEEP = 7


class FlowAction(IntEnum):
    """What the device does after the flow finishes."""

    RECOVER = 0
    STAY = 1
    OFF = 2


class PowerMode(IntEnum):
    """Optional fourth ``set_power`` parameter selecting the mode to turn on in."""

    NORMAL = 0
    CT = 1
    RGB = 2
    HSV = 3
    COLOR_FLOW = 4
    NIGHT_LIGHT = 5


def _check_range(name: str, value: Any, minimum: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer; got {value!r}")
    if value < minimum or value > maximum:
        raise ValidationError(f"{name} must be between {minimum} and {maximum}; got {value}")
    return value


def pack_rgb(red: int, green: int, blue: int) -> int:
    _check_range("red", red, 0, 255)
    _check_range("green", green, 0, 255)
    _check_range("blue", blue, 0, 255)
    return (red << 16) | (green << 8) | blue


def unpack_rgb(value: int) -> Tuple[int, int, int]:
    return (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF


@dataclass(frozen=True)
class FlowTransition:
    """One step of a color flow.

    Sleep steps hold the current color; their value and brightness are not
    sent to the device and are normalized to 0 and -1.
    """

    duration: int
    mode: FlowMode
    value: int = 0
    brightness: int = BRIGHTNESS_UNCHANGED

    def __post_init__(self) -> None:
        _check_range("duration", self.duration, MIN_TRANSITION_MS, 2**31 - 1)
        try:
            mode = FlowMode(self.mode)
        except ValueError as exc:
            raise ValidationError(f"Unknown flow mode: {self.mode!r}") from exc
        object.__setattr__(self, "mode", mode)
        if mode is FlowMode.SLEEP:
            object.__setattr__(self, "value", 0)
            object.__setattr__(self, "brightness", BRIGHTNESS_UNCHANGED)
            return
        if mode is FlowMode.COLOR:
            _check_range("rgb value", self.value, 0, 0xFFFFFF)
        else:
            _check_range("color temperature", self.value, 1700, 6500)
        if self.brightness != BRIGHTNESS_UNCHANGED:
            _check_range("brightness", self.brightness, 1, 100)

    @classmethod
    def color(cls, duration: int, rgb: int, brightness: int = BRIGHTNESS_UNCHANGED) -> "FlowTransition":
        return cls(duration, FlowMode.COLOR, rgb, brightness)

    @classmethod
    def temperature(
        cls, duration: int, kelvin: int, brightness: int = BRIGHTNESS_UNCHANGED
    ) -> "FlowTransition":
        return cls(duration, FlowMode.TEMPERATURE, kelvin, brightness)

    @classmethod
    def sleep(cls, duration: int) -> "FlowTransition":
        return cls(duration, FlowMode.SLEEP)

    def wire_tuple(self) -> Tuple[int, int, int, int]:
        if self.mode is FlowMode.SLEEP:
            return (self.duration, int(self.mode), 0, 0)
        return (self.duration, int(self.mode), self.value, self.brightness)


@dataclass(frozen=True)
class FlowEffect:
    """Immutable color flow: transitions, repeat count (0 = infinite), end action."""

    transitions: Tuple[FlowTransition, ...]
    count: int = 0
    action: FlowAction = FlowAction.RECOVER
    name: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "transitions", tuple(self.transitions))
        if not self.transitions:
            raise ValidationError("A flow effect needs at least one transition")
        _check_range("count", self.count, 0, 2**31 - 1)
        try:
            object.__setattr__(self, "action", FlowAction(self.action))
        except ValueError as exc:
            raise ValidationError(f"Unknown flow action: {self.action!r}") from exc


def encode_flow(effect: FlowEffect) -> str:
    """Render a flow effect's transitions as a flow expression."""

    return ",".join(
        ",".join(str(part) for part in transition.wire_tuple())
        for transition in effect.transitions
    )


def decode_flow(
    expression: str,
    count: int = 0,
    action: FlowAction = FlowAction.RECOVER,
) -> FlowEffect:
    """Parse a flow expression back into a :class:`FlowEffect`.

    The expression carries only transitions; ``count`` and ``action`` travel
    as separate ``start_cf`` parameters and are supplied by the caller.
    """

    parts = [part.strip() for part in expression.split(",")]
    if not expression.strip() or len(parts) % 4:
        raise ValidationError(
            f"Flow expression must contain groups of 4 integers; got {len(parts)} values"
        )
    try:
        numbers = [int(part) for part in parts]
    except ValueError as exc:
        raise ValidationError(f"Flow expression contains a non-integer: {expression!r}") from exc
    transitions = [
        FlowTransition(numbers[i], numbers[i + 1], numbers[i + 2], numbers[i + 3])
        for i in range(0, len(numbers), 4)
    ]
    return FlowEffect(tuple(transitions), count=count, action=action)


def effect_to_dict(effect: FlowEffect) -> Dict[str, Any]:
    """JSON-compatible form used when the embedding app persists an effect."""

    return {
        "name": effect.name,
        "count": effect.count,
        "action": effect.action.name.lower(),
        "expression": encode_flow(effect),
    }


def effect_from_dict(data: Mapping[str, Any]) -> FlowEffect:
    try:
        action = FlowAction[str(data.get("action", "recover")).upper()]
    except KeyError as exc:
        raise ValidationError(f"Unknown flow action: {data.get('action')!r}") from exc
    effect = decode_flow(str(data["expression"]), count=int(data.get("count", 0)), action=action)
    name = data.get("name")
    if name is None:
        return effect
    return FlowEffect(effect.transitions, effect.count, effect.action, name=str(name))


def _transition_params(duration_ms: int) -> Tuple[str, int]:
    _check_range("duration", duration_ms, 0, 2**31 - 1)
    if duration_ms == 0:
        return "sudden", 0
    if duration_ms < MIN_SMOOTH_MS:
        raise ValidationError(
            f"Smooth transitions need at least {MIN_SMOOTH_MS} ms; got {duration_ms}"
        )
    return "smooth", duration_ms


def set_power(on: bool, duration_ms: int = 0, mode: Optional[PowerMode] = None) -> Command:
    effect, duration = _transition_params(duration_ms)
    params: List[Param] = ["on" if on else "off", effect, duration]
    if mode is not None:
        params.append(int(PowerMode(mode)))
    return Command("set_power", tuple(params))


def toggle() -> Command:
    return Command("toggle")


def set_brightness(brightness: int, duration_ms: int = 0) -> Command:
    _check_range("brightness", brightness, 1, 100)
    effect, duration = _transition_params(duration_ms)
    return Command("set_bright", (brightness, effect, duration))


def set_color_temperature(kelvin: int, duration_ms: int = 0) -> Command:
    _check_range("color temperature", kelvin, 1700, 6500)
    effect, duration = _transition_params(duration_ms)
    return Command("set_ct_abx", (kelvin, effect, duration))


def set_rgb(red: int, green: int, blue: int, duration_ms: int = 0) -> Command:
    value = pack_rgb(red, green, blue)
    effect, duration = _transition_params(duration_ms)
    return Command("set_rgb", (value, effect, duration))


def set_hsv(hue: int, saturation: int, duration_ms: int = 0) -> Command:
    _check_range("hue", hue, 0, 359)
    _check_range("saturation", saturation, 0, 100)
    effect, duration = _transition_params(duration_ms)
    return Command("set_hsv", (hue, saturation, effect, duration))


def start_flow(effect: FlowEffect) -> Command:
    return Command("start_cf", (effect.count, int(effect.action), encode_flow(effect)))


def stop_flow() -> Command:
    return Command("stop_cf")


def set_scene_color(red: int, green: int, blue: int, brightness: int) -> Command:
    _check_range("brightness", brightness, 1, 100)
    return Command("set_scene", ("color", pack_rgb(red, green, blue), brightness))


def set_scene_temperature(kelvin: int, brightness: int) -> Command:
    _check_range("color temperature", kelvin, 1700, 6500)
    _check_range("brightness", brightness, 1, 100)
    return Command("set_scene", ("ct", kelvin, brightness))


def set_scene_hsv(hue: int, saturation: int, brightness: int) -> Command:
    _check_range("hue", hue, 0, 359)
    _check_range("saturation", saturation, 0, 100)
    _check_range("brightness", brightness, 1, 100)
    return Command("set_scene", ("hsv", hue, saturation, brightness))


def set_scene_flow(effect: FlowEffect) -> Command:
    return Command("set_scene", ("cf", effect.count, int(effect.action), encode_flow(effect)))


def set_scene_auto_delay_off(brightness: int, minutes: int) -> Command:
    _check_range("brightness", brightness, 1, 100)
    _check_range("minutes", minutes, 1, 1440)
    return Command("set_scene", ("auto_delay_off", brightness, minutes))


def set_adjust(action: str, prop: str) -> Command:
    if action not in {"increase", "decrease", "circle"}:
        raise ValidationError(f"Unknown adjust action: {action!r}")
    if prop not in {"bright", "ct", "color"}:
        raise ValidationError(f"Unknown adjust property: {prop!r}")
    if prop == "color" and action != "circle":
        raise ValidationError("Color can only be adjusted with 'circle'")
    return Command("set_adjust", (action, prop))


def set_default() -> Command:
    return Command("set_default")


def set_name(name: str) -> Command:
    if not name:
        raise ValidationError("Device name must not be empty")
    return Command("set_name", (name,))


def get_prop(props: Sequence[str] = GET_PROP_FIELDS) -> Command:
    if not props:
        raise ValidationError("get_prop needs at least one property")
    return Command("get_prop", tuple(props))


def _preset(name: str, count: int, action: FlowAction, steps: Sequence[Tuple[int, int, int, int]]) -> FlowEffect:
    return FlowEffect(
        tuple(FlowTransition(*step) for step in steps), count=count, action=action, name=name
    )


def candlelight() -> FlowEffect:
    return _preset(
        "candlelight",
        0,
        FlowAction.RECOVER,
        [(2000, 2, 2700, 50), (1000, 2, 2400, 30), (1000, 2, 2700, 40)],
    )


def sunset() -> FlowEffect:
    return _preset(
        "sunset",
        3,
        FlowAction.STAY,
        [(3000, 1, 0xFF6600, 100), (3000, 1, 0xFF2200, 60), (4000, 1, 0x220066, 20)],
    )


def pulse(rgb: int = 0x800080) -> FlowEffect:
    red, green, blue = unpack_rgb(rgb)
    dim = pack_rgb(red // 2, green // 2, blue // 2)
    return _preset("pulse", 0, FlowAction.RECOVER, [(1000, 1, rgb, 100), (1000, 1, dim, 30)])


def party() -> FlowEffect:
    colors = (0xFF0000, 0x00FF00, 0x0000FF, 0xFF00FF, 0xFFFF00)
    return _preset("party", 0, FlowAction.RECOVER, [(1000, 1, color, 100) for color in colors])


def ocean_wave() -> FlowEffect:
    return _preset(
        "ocean_wave",
        0,
        FlowAction.RECOVER,
        [(3000, 1, 0x0077BE, 80), (3000, 1, 0x40E0D0, 70), (3000, 1, 0x0077BE, 60)],
    )


def thunderstorm() -> FlowEffect:
    return _preset(
        "thunderstorm",
        0,
        FlowAction.RECOVER,
        [(100, 1, 0xFFFFFF, 100), (200, 1, 0x191970, 20), (50, 1, 0xFFFFFF, 90), (3000, 1, 0x191970, 15)],
    )


def fire(offset_ms: int = 0) -> FlowEffect:
    """Flickering orange; ``offset_ms`` staggers lights in a group so they drift apart."""

    return _preset(
        "fire",
        0,
        FlowAction.RECOVER,
        [
            (1000 + offset_ms, 1, 0xFF4500, 80),
            (800 + offset_ms, 1, 0xFF8C00, 60),
            (1200 + offset_ms, 1, 0xFF6347, 70),
        ],
    )


PRESETS: Dict[str, Callable[[], FlowEffect]] = {
    "candlelight": candlelight,
    "sunset": sunset,
    "pulse": pulse,
    "party": party,
    "ocean_wave": ocean_wave,
    "thunderstorm": thunderstorm,
    "fire": fire,
}
