import asyncio
from typing import Dict

import pytest

from conftest import FakeDevice, FakeSession
from yeelight_lan.config import Config
from yeelight_lan.effects import set_power
from yeelight_lan.errors import SessionClosedError, UnknownDeviceError
from yeelight_lan.manager import ConnectionManager
from yeelight_lan.models import DeviceDescriptor, StateUpdate


@pytest.mark.asyncio
async def test_session_for_is_idempotent(config: Config, session_factory, fake_sessions: Dict[str, FakeSession]) -> None:
    manager = ConnectionManager(config, session_factory)
    manager.register(DeviceDescriptor("a", "10.0.0.1"))

    sessions = await asyncio.gather(*(manager.session_for("a") for _ in range(5)))

    assert all(session is sessions[0] for session in sessions)
    assert len(fake_sessions) == 1
    assert fake_sessions["a"].started == 1


@pytest.mark.asyncio
async def test_unknown_device_raises(config: Config, session_factory) -> None:
    manager = ConnectionManager(config, session_factory)
    with pytest.raises(UnknownDeviceError):
        await manager.session_for("missing")
    with pytest.raises(KeyError):
        manager.descriptor("missing")


@pytest.mark.asyncio
async def test_register_updates_address_of_existing_session(config: Config, session_factory, fake_sessions) -> None:
    manager = ConnectionManager(config, session_factory)
    manager.register(DeviceDescriptor("a", "10.0.0.1"))
    await manager.session_for("a")

    manager.register(DeviceDescriptor("a", "10.0.0.7", 55444))

    assert fake_sessions["a"].host == "10.0.0.7"
    assert fake_sessions["a"].port == 55444
    assert manager.descriptor("a").ip == "10.0.0.7"
    assert len(manager.descriptors()) == 1


@pytest.mark.asyncio
async def test_updates_are_merged(config: Config, session_factory, fake_sessions) -> None:
    manager = ConnectionManager(config, session_factory)
    manager.register(DeviceDescriptor("a", "10.0.0.1"))
    manager.register(DeviceDescriptor("b", "10.0.0.2"))
    await manager.session_for("a")
    await manager.session_for("b")
    merged = manager.updates.subscribe()

    fake_sessions["a"].updates.publish(StateUpdate("a", {"power": True}, "notification"))
    fake_sessions["b"].updates.publish(StateUpdate("b", {"power": False}, "notification"))

    assert [merged.get_nowait().device_id for _ in range(2)] == ["a", "b"]


@pytest.mark.asyncio
async def test_close_all_closes_every_session(config: Config, session_factory, fake_sessions) -> None:
    manager = ConnectionManager(config, session_factory)
    for device_id in ("a", "b"):
        manager.register(DeviceDescriptor(device_id, "10.0.0.1"))
        await manager.session_for(device_id)

    await manager.close_all()

    assert all(session.closed for session in fake_sessions.values())
    assert manager.sessions() == []
    # Descriptors outlive their sockets.
    assert len(manager.descriptors()) == 2


@pytest.mark.asyncio
async def test_close_all_fails_pending_requests(config: Config) -> None:
    device = FakeDevice(handler=lambda request: None)
    await device.start()
    manager = ConnectionManager(config)
    manager.register(device.descriptor("real"))
    try:
        session = await manager.session_for("real")
        task = asyncio.create_task(session.send(set_power(True)))
        await asyncio.wait_for(device.requests.get(), 2)

        await manager.close_all()

        with pytest.raises(SessionClosedError):
            await task
    finally:
        await manager.close_all()
        await device.stop()


@pytest.mark.asyncio
async def test_unregister_forgets_device(config: Config, session_factory, fake_sessions) -> None:
    manager = ConnectionManager(config, session_factory)
    manager.register(DeviceDescriptor("a", "10.0.0.1"))
    await manager.session_for("a")

    await manager.unregister("a")

    assert fake_sessions["a"].closed
    assert "a" not in manager


@pytest.mark.asyncio
async def test_session_activity_refreshes_last_seen(config: Config, session_factory, fake_sessions) -> None:
    manager = ConnectionManager(config, session_factory)
    manager.register(DeviceDescriptor("a", "10.0.0.1", last_seen=1000.0))
    await manager.session_for("a")

    fake_sessions["a"].updates.publish(StateUpdate("a", {"online": False}, "connection"))
    assert manager.descriptor("a").last_seen == 1000.0

    fake_sessions["a"].updates.publish(StateUpdate("a", {"power": True}, "ack"))
    refreshed = manager.descriptor("a").last_seen
    assert refreshed > 1000.0

    # A re-registration carrying an older timestamp does not roll it back.
    manager.register(DeviceDescriptor("a", "10.0.0.1", last_seen=1000.0))
    assert manager.descriptor("a").last_seen == refreshed


@pytest.mark.asyncio
async def test_acknowledged_command_refreshes_last_seen(config: Config, fake_device: FakeDevice) -> None:
    manager = ConnectionManager(config)
    manager.register(fake_device.descriptor("lamp", last_seen=1000.0))
    try:
        session = await manager.session_for("lamp")
        assert await session.send(set_power(True)) == ["ok"]
        assert manager.descriptor("lamp").last_seen > 1000.0
    finally:
        await manager.close_all()
