import json

import pytest

from yeelight_lan.codec import (
    Command,
    Notification,
    Response,
    confirmed_fields,
    decode_message,
    encode_request,
    get_prop_result_to_props,
    props_to_state_fields,
)
from yeelight_lan.errors import ProtocolError, ValidationError
from yeelight_lan.models import ColorMode


def test_encode_request_is_one_crlf_terminated_line() -> None:
    wire = encode_request(Command("set_power", ("on", "smooth", 500), id=7))
    assert wire.endswith(b"\r\n")
    assert wire.count(b"\n") == 1
    assert json.loads(wire) == {"id": 7, "method": "set_power", "params": ["on", "smooth", 500]}


def test_encode_requires_id() -> None:
    with pytest.raises(ValueError):
        encode_request(Command("toggle"))


@pytest.mark.parametrize("param", [True, None, [1, 2], {"a": 1}])
def test_command_rejects_non_scalar_params(param: object) -> None:
    with pytest.raises(ValidationError):
        Command("set_bright", (param,))  # type: ignore[arg-type]


def test_decode_success_response() -> None:
    message = decode_message(b'{"id":1, "result":["ok"]}\r\n')
    assert message == Response(id=1, result=["ok"])
    assert message.ok


def test_decode_error_response() -> None:
    message = decode_message('{"id":2, "error":{"code":-1, "message":"unsupported method"}}')
    assert isinstance(message, Response)
    assert not message.ok
    with pytest.raises(ProtocolError) as excinfo:
        message.raise_for_error()
    assert excinfo.value.code == -1


def test_decode_notification() -> None:
    message = decode_message('{"method":"props","params":{"power":"on","bright":"10"}}')
    assert message == Notification(props={"power": "on", "bright": "10"})


@pytest.mark.parametrize(
    "line",
    [b"", b"not json", b"[1,2]", b'{"method":"other"}', b"\xff\xfe"],
)
def test_decode_rejects_malformed(line: bytes) -> None:
    with pytest.raises(ProtocolError):
        decode_message(line)


def test_props_to_state_fields_converts_types() -> None:
    fields = props_to_state_fields(
        {"power": "off", "bright": "42", "color_mode": "1", "rgb": "255", "flowing": "1", "hue": "", "x": "1"}
    )
    assert fields == {
        "power": False,
        "brightness": 42,
        "color_mode": ColorMode.RGB,
        "rgb": 255,
        "flowing": True,
    }


def test_get_prop_result_pairs_with_requested_fields() -> None:
    props = get_prop_result_to_props(["on", "50"])
    assert props == {"power": "on", "bright": "50"}


def test_confirmed_fields_for_setters() -> None:
    assert confirmed_fields(Command("set_power", ("off", "sudden", 0))) == {"power": False}
    assert confirmed_fields(Command("set_ct_abx", (2700, "sudden", 0)))["ct"] == 2700
    assert confirmed_fields(Command("start_cf", (0, 0, "500,1,255,100"))) == {"flowing": True}
    assert confirmed_fields(Command("set_scene", ("ct", 5000, 80))) == {
        "power": True,
        "ct": 5000,
        "brightness": 80,
        "color_mode": ColorMode.TEMPERATURE,
        "flowing": False,
    }
    assert confirmed_fields(Command("get_prop", ("power",))) == {}
