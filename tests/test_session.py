import asyncio
from typing import Any, Dict

import pytest

from conftest import FakeDevice
from yeelight_lan.codec import Command
from yeelight_lan.config import Config
from yeelight_lan.effects import set_brightness, set_power
from yeelight_lan.errors import (
    CommandTimeoutError,
    DeviceConnectionError,
    ProtocolError,
    SessionClosedError,
)
from yeelight_lan.session import DeviceSession, SessionState


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_send_returns_result_and_publishes_ack(fake_device: FakeDevice, config: Config) -> None:
    session = DeviceSession(fake_device.descriptor(), config)
    updates = session.updates.subscribe()
    try:
        await session.connect()
        assert session.state is SessionState.READY
        assert (await updates.get(timeout=1)).fields == {"online": True}

        result = await session.send(set_power(True))

        assert result == ["ok"]
        assert fake_device.received[0]["method"] == "set_power"
        assert fake_device.received[0]["params"] == ["on", "sudden", 0]
        ack = await updates.get(timeout=1)
        assert ack.source == "ack"
        assert ack.fields == {"power": True}
        assert session.pending_ids == ()
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_responses_are_matched_by_id_not_arrival_order(config: Config) -> None:
    device = FakeDevice(handler=lambda request: None)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    try:
        await session.connect()
        first = asyncio.create_task(session.send(Command("get_prop", ("power",))))
        second = asyncio.create_task(session.send(Command("get_prop", ("bright",))))
        request_a = await asyncio.wait_for(device.requests.get(), 1)
        request_b = await asyncio.wait_for(device.requests.get(), 1)
        assert request_a["id"] != request_b["id"]

        await device.push({"id": request_b["id"], "result": ["80"]})
        await device.push({"id": request_a["id"], "result": ["on"]})

        assert await first == ["on"]
        assert await second == ["80"]
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_timeout_removes_pending_entry(config: Config) -> None:
    device = FakeDevice(handler=lambda request: None)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    try:
        await session.connect()
        with pytest.raises(CommandTimeoutError) as excinfo:
            await session.send(set_brightness(50), timeout=0.1)
        assert isinstance(excinfo.value, ProtocolError)
        assert session.pending_ids == ()

        # A late answer for the expired id is ignored.
        await device.push({"id": device.received[0]["id"], "result": ["ok"]})
        await asyncio.sleep(0.05)
        assert session.state is SessionState.READY
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_cancelled_send_removes_pending_entry(config: Config) -> None:
    device = FakeDevice(handler=lambda request: None)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    try:
        await session.connect()
        task = asyncio.create_task(session.send(set_power(False)))
        await asyncio.wait_for(device.requests.get(), 1)
        assert len(session.pending_ids) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.pending_ids == ()
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_error_response_raises_protocol_error(config: Config) -> None:
    def handler(request: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": request["id"], "error": {"code": -1, "message": "unsupported method"}}

    device = FakeDevice(handler=handler)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    try:
        await session.connect()
        with pytest.raises(ProtocolError) as excinfo:
            await session.send(Command("set_adjust", ("increase", "bright")))
        assert excinfo.value.code == -1
        assert "unsupported method" in str(excinfo.value)
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_notifications_become_state_updates(fake_device: FakeDevice, config: Config) -> None:
    session = DeviceSession(fake_device.descriptor(), config)
    updates = session.updates.subscribe()
    try:
        await session.connect()
        await updates.get(timeout=1)
        await fake_device.push({"method": "props", "params": {"power": "off", "bright": "20"}})

        update = await updates.get(timeout=1)
        assert update.source == "notification"
        assert update.fields == {"power": False, "brightness": 20}
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_refresh_state_reads_properties(config: Config) -> None:
    def handler(request: Dict[str, Any]) -> Dict[str, Any]:
        assert request["method"] == "get_prop"
        return {"id": request["id"], "result": ["on", "75", "3500", "16711680", "0", "0", "2", "0", "desk"]}

    device = FakeDevice(handler=handler)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    try:
        await session.connect()
        fields = await session.refresh_state()
        assert fields["power"] is True
        assert fields["brightness"] == 75
        assert fields["ct"] == 3500
        assert fields["flowing"] is False
        assert fields["name"] == "desk"
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_disconnect_fails_pending_and_reconnects(config: Config) -> None:
    device = FakeDevice(handler=lambda request: None)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    updates = session.updates.subscribe()
    try:
        await session.connect()
        task = asyncio.create_task(session.send(set_power(True)))
        await asyncio.wait_for(device.requests.get(), 1)

        device.drop_connections()

        with pytest.raises(DeviceConnectionError):
            await task
        assert session.pending_ids == ()
        await _wait_for(lambda: device.connections == 2 and session.ready)
        online = [updates.get_nowait().fields.get("online") for _ in range(updates.pending())]
        assert online == [True, False, True]
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_close_fails_pending_with_session_closed(config: Config) -> None:
    device = FakeDevice(handler=lambda request: None)
    await device.start()
    session = DeviceSession(device.descriptor(), config)
    try:
        await session.connect()
        task = asyncio.create_task(session.send(set_power(True)))
        await asyncio.wait_for(device.requests.get(), 1)

        await session.close()

        with pytest.raises(SessionClosedError):
            await task
        assert session.state is SessionState.CLOSED
        with pytest.raises(SessionClosedError):
            await session.send(set_power(False))
    finally:
        await session.close()
        await device.stop()


@pytest.mark.asyncio
async def test_send_before_connect_waits_for_connection(fake_device: FakeDevice, config: Config) -> None:
    session = DeviceSession(fake_device.descriptor(), config)
    try:
        assert await session.send(set_power(True)) == ["ok"]
        assert session.ready
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_unreachable_device_raises_connection_error(config: Config) -> None:
    device = FakeDevice()
    await device.start()
    descriptor = device.descriptor()
    await device.stop()
    session = DeviceSession(descriptor, config)
    try:
        with pytest.raises(DeviceConnectionError):
            await session.connect()
        assert session.state is SessionState.DISCONNECTED
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_correlation_ids_wrap_and_skip_pending(fake_device: FakeDevice) -> None:
    session = DeviceSession(fake_device.descriptor(), Config(command_id_max=16))
    session._next_id = 15
    assert session._allocate_id() == 16
    session._pending[1] = None  # type: ignore[assignment]
    assert session._allocate_id() == 2
