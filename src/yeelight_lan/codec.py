"""Line-delimited JSON codec for the Yeelight control socket."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ProtocolError, ValidationError
from .models import ColorMode

Param = Union[int, float, str]

LINE_TERMINATOR = b"\r\n"

# Properties requested by get_prop, in the order the device answers them.
GET_PROP_FIELDS: Tuple[str, ...] = (
    "power",
    "bright",
    "ct",
    "rgb",
    "hue",
    "sat",
    "color_mode",
    "flowing",
    "name",
)


def _check_param(value: Any) -> Param:
    # bool is an int subclass but the protocol has no boolean parameters.
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValidationError(
            f"Command parameters must be int, float or str; got {type(value).__name__}"
        )
    return value


@dataclass(frozen=True)
class Command:
    """A single protocol request.

    ``id`` is left unset by callers and assigned by the device session right
    before the command is queued for writing.
    """

    method: str
    params: Tuple[Param, ...] = ()
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.method:
            raise ValidationError("Command method must not be empty")
        object.__setattr__(self, "params", tuple(_check_param(p) for p in self.params))

    def with_id(self, command_id: int) -> "Command":
        return replace(self, id=command_id)

    def to_wire(self) -> Dict[str, Any]:
        if self.id is None:
            raise ValueError("Command id must be assigned before encoding")
        return {"id": self.id, "method": self.method, "params": list(self.params)}


@dataclass(frozen=True)
class Response:
    """Answer to a command, matched by ``id``."""

    id: int
    result: Optional[List[Any]] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_code is None and self.error_message is None

    def raise_for_error(self) -> List[Any]:
        if not self.ok:
            raise ProtocolError(self.error_message or "device returned an error", self.error_code)
        return list(self.result or [])


@dataclass(frozen=True)
class Notification:
    """Unsolicited ``props`` message pushed by the device."""

    props: Mapping[str, Any] = field(default_factory=dict)


Message = Union[Response, Notification]


def encode_request(command: Command) -> bytes:
    """Serialize a command into one wire line."""

    return json.dumps(command.to_wire(), separators=(",", ":")).encode("utf-8") + LINE_TERMINATOR


def decode_message(line: Union[bytes, str]) -> Message:
    """Parse one line received from a device."""

    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Message is not valid UTF-8") from exc
    text = line.strip()
    if not text:
        raise ProtocolError("Empty message")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Message is not JSON: {text[:80]}") from exc
    if not isinstance(payload, Mapping):
        raise ProtocolError("Message is not a JSON object")

    message_id = payload.get("id")
    if isinstance(message_id, int) and not isinstance(message_id, bool):
        error = payload.get("error")
        if error is not None:
            if isinstance(error, Mapping):
                code = error.get("code")
                return Response(
                    id=message_id,
                    error_code=code if isinstance(code, int) else None,
                    error_message=str(error.get("message") or "device returned an error"),
                )
            return Response(id=message_id, error_message=str(error))
        result = payload.get("result")
        if result is not None and not isinstance(result, list):
            result = [result]
        return Response(id=message_id, result=result)

    if payload.get("method") == "props" and isinstance(payload.get("params"), Mapping):
        return Notification(props=dict(payload["params"]))
    raise ProtocolError(f"Unrecognized message: {text[:80]}")


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def props_to_state_fields(props: Mapping[str, Any]) -> Dict[str, Any]:
    """Convert device properties (mostly strings) into typed state fields.

    Empty strings, which devices return for properties they lack, and
    unknown keys are ignored.
    """

    result: Dict[str, Any] = {}
    for key, raw in props.items():
        if raw == "" or raw is None:
            continue
        if key == "power":
            result["power"] = str(raw).lower() == "on"
        elif key == "bright":
            value = _to_int(raw)
            if value is not None:
                result["brightness"] = value
        elif key in {"ct", "rgb", "hue", "sat"}:
            value = _to_int(raw)
            if value is not None:
                result[key] = value
        elif key == "color_mode":
            value = _to_int(raw)
            if value in {mode.value for mode in ColorMode}:
                result["color_mode"] = ColorMode(value)
        elif key == "flowing":
            result["flowing"] = str(raw) == "1"
        elif key == "name":
            result["name"] = str(raw)
    return result


def get_prop_result_to_props(result: Sequence[Any]) -> Dict[str, Any]:
    """Pair a ``get_prop`` result list with the requested property names."""

    return dict(zip(GET_PROP_FIELDS, result))


def confirmed_fields(command: Command) -> Dict[str, Any]:
    """State fields that a successful ack of ``command`` confirms."""

    params = command.params
    method = command.method
    if method == "set_power" and params:
        return {"power": params[0] == "on"}
    if method == "set_bright" and params:
        return {"brightness": int(params[0])}
    if method == "set_ct_abx" and params:
        return {"ct": int(params[0]), "color_mode": ColorMode.TEMPERATURE, "flowing": False}
    if method == "set_rgb" and params:
        return {"rgb": int(params[0]), "color_mode": ColorMode.RGB, "flowing": False}
    if method == "set_hsv" and len(params) >= 2:
        return {
            "hue": int(params[0]),
            "sat": int(params[1]),
            "color_mode": ColorMode.HSV,
            "flowing": False,
        }
    if method == "start_cf":
        return {"flowing": True}
    if method == "stop_cf":
        return {"flowing": False}
    if method == "set_name" and params:
        return {"name": str(params[0])}
    if method == "set_scene" and params:
        return _scene_fields(params)
    return {}


def _scene_fields(params: Tuple[Param, ...]) -> Dict[str, Any]:
    kind = params[0]
    fields: Dict[str, Any] = {"power": True}
    if kind == "color" and len(params) >= 3:
        fields.update(
            rgb=int(params[1]), brightness=int(params[2]), color_mode=ColorMode.RGB, flowing=False
        )
    elif kind == "ct" and len(params) >= 3:
        fields.update(
            ct=int(params[1]),
            brightness=int(params[2]),
            color_mode=ColorMode.TEMPERATURE,
            flowing=False,
        )
    elif kind == "hsv" and len(params) >= 4:
        fields.update(
            hue=int(params[1]),
            sat=int(params[2]),
            brightness=int(params[3]),
            color_mode=ColorMode.HSV,
            flowing=False,
        )
    elif kind == "cf":
        fields["flowing"] = True
    elif kind == "auto_delay_off" and len(params) >= 2:
        fields["brightness"] = int(params[1])
    return fields
