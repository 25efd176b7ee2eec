import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from yeelight_lan.codec import Command
from yeelight_lan.config import Config
from yeelight_lan.events import EventStream
from yeelight_lan.models import DeviceDescriptor, StateUpdate

Reply = Union[None, Dict[str, Any], List[Dict[str, Any]]]


class FakeDevice:
    """A TCP server speaking just enough of the control protocol for tests."""

    def __init__(self, handler: Optional[Callable[[Dict[str, Any]], Reply]] = None) -> None:
        self.handler = handler or (lambda request: {"id": request["id"], "result": ["ok"]})
        self.received: List[Dict[str, Any]] = []
        self.requests: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.connections = 0
        self._writers: List[asyncio.StreamWriter] = []
        self._server: Optional[asyncio.AbstractServer] = None
        self.port = 0

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    def descriptor(self, device_id: str = "0x0000000000000001", **kwargs: Any) -> DeviceDescriptor:
        return DeviceDescriptor(id=device_id, ip="127.0.0.1", port=self.port, **kwargs)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = json.loads(line)
                self.received.append(request)
                self.requests.put_nowait(request)
                replies = self.handler(request)
                if replies is None:
                    continue
                for reply in replies if isinstance(replies, list) else [replies]:
                    await self.push(reply, writer)
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def push(self, message: Dict[str, Any], writer: Optional[asyncio.StreamWriter] = None) -> None:
        for target in [writer] if writer is not None else list(self._writers):
            if target.is_closing():
                continue
            target.write(json.dumps(message).encode("utf-8") + b"\r\n")
            await target.drain()

    def drop_connections(self) -> None:
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    async def stop(self) -> None:
        self.drop_connections()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()


class FakeSession:
    """Stands in for a DeviceSession; records commands instead of sending them."""

    def __init__(self, descriptor: DeviceDescriptor, config: Config) -> None:
        self.device_id = descriptor.id
        self.host = descriptor.ip
        self.port = descriptor.port
        self.config = config
        self.updates: EventStream[StateUpdate] = EventStream(f"fake:{descriptor.id}")
        self.sent: List[Command] = []
        self.fail_with: Optional[Exception] = None
        self.ready = True
        self.started = 0
        self.closed = False
        self.refreshes = 0

    def start(self) -> None:
        self.started += 1

    async def send(self, command: Command, timeout: Optional[float] = None) -> List[Any]:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(command)
        return ["ok"]

    async def refresh_state(self) -> Dict[str, Any]:
        self.refreshes += 1
        if self.fail_with is not None:
            raise self.fail_with
        return {"power": True}

    def update_target(self, host: str, port: int) -> None:
        self.host, self.port = host, port

    async def close(self) -> None:
        self.closed = True

    @property
    def methods(self) -> List[str]:
        return [command.method for command in self.sent]


@pytest.fixture
def config() -> Config:
    return Config(
        command_timeout=1.0,
        session_connect_timeout=1.0,
        session_reconnect_base=0.01,
        session_reconnect_max=0.05,
        session_reconnect_jitter=False,
        scene_transition_ms=0,
    )


@pytest.fixture
def fake_sessions() -> Dict[str, FakeSession]:
    return {}


@pytest.fixture
def session_factory(fake_sessions: Dict[str, FakeSession]) -> Callable[[DeviceDescriptor, Config], FakeSession]:
    def factory(descriptor: DeviceDescriptor, config: Config) -> FakeSession:
        session = FakeSession(descriptor, config)
        fake_sessions[descriptor.id] = session
        return session

    return factory


@pytest_asyncio.fixture
async def fake_device():
    device = FakeDevice()
    await device.start()
    try:
        yield device
    finally:
        await device.stop()

