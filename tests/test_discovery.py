import asyncio
from typing import List, Tuple

import pytest

from yeelight_lan.config import Config
from yeelight_lan.discovery import (
    DiscoveryProtocol,
    DiscoveryService,
    dedupe_descriptors,
    parse_discovery_response,
)
from yeelight_lan.errors import DiscoveryError
from yeelight_lan.manager import ConnectionManager
from yeelight_lan.models import DeviceDescriptor
from yeelight_lan.state import StateCache


def _response(device_id: str, ip: str, port: int = 55443, model: str = "color") -> str:
    return (
        "HTTP/1.1 200 OK\r\n"
        "Cache-Control: max-age=3600\r\n"
        f"Location: yeelight://{ip}:{port}\r\n"
        "Server: POSIX UPnP/1.0 YGLC/1\r\n"
        f"id: {device_id}\r\n"
        f"model: {model}\r\n"
        "fw_ver: 18\r\n"
        "support: get_prop set_default set_power toggle set_bright start_cf stop_cf set_scene "
        "set_ct_abx set_rgb set_hsv set_adjust set_name\r\n"
        "power: on\r\n"
        "bright: 100\r\n"
        "name: desk\r\n"
    )


def test_parse_response_fields() -> None:
    descriptor = parse_discovery_response(_response("0x01", "192.168.1.239"), ("192.168.1.239", 1982))
    assert descriptor.id == "0x01"
    assert descriptor.ip == "192.168.1.239"
    assert descriptor.port == 55443
    assert descriptor.model == "color"
    assert descriptor.fw_ver == "18"
    assert descriptor.name == "desk"
    assert "set_rgb" in descriptor.support
    assert descriptor.capabilities.rgb
    assert descriptor.capabilities.flow


def test_parse_notify_advertisement() -> None:
    text = _response("0x02", "10.0.0.5", 55444).replace("HTTP/1.1 200 OK", "NOTIFY * HTTP/1.1")
    descriptor = parse_discovery_response(text, ("10.0.0.5", 1982))
    assert descriptor.port == 55444


@pytest.mark.parametrize(
    "text",
    [
        "garbage",
        "HTTP/1.1 200 OK\r\nLocation: yeelight://1.2.3.4:55443\r\n",
        "HTTP/1.1 200 OK\r\nid: 0x1\r\n",
        "HTTP/1.1 200 OK\r\nid: 0x1\r\nLocation: http://1.2.3.4:80\r\n",
    ],
)
def test_parse_rejects_malformed(text: str) -> None:
    with pytest.raises(DiscoveryError):
        parse_discovery_response(text, ("1.2.3.4", 1982))


def test_dedupe_keeps_latest_last_seen() -> None:
    older = DeviceDescriptor("0x01", "10.0.0.1", last_seen=100.0)
    newer = DeviceDescriptor("0x01", "10.0.0.9", last_seen=200.0)
    other = DeviceDescriptor("0x02", "10.0.0.2", last_seen=150.0)

    result = dedupe_descriptors([newer, other, older])

    assert len(result) == 2
    by_id = {descriptor.id: descriptor for descriptor in result}
    assert by_id["0x01"].last_seen == 200.0
    assert by_id["0x01"].ip == "10.0.0.9"


def test_protocol_discards_malformed_datagrams() -> None:
    found: List[DeviceDescriptor] = []
    protocol = DiscoveryProtocol(found.append, "search")
    protocol.datagram_received(b"\xff\xfe", ("1.2.3.4", 1982))
    protocol.datagram_received(b"HTTP/1.1 200 OK\r\nname: x\r\n", ("1.2.3.4", 1982))
    protocol.datagram_received(_response("0x03", "1.2.3.4").encode(), ("1.2.3.4", 1982))
    assert [descriptor.id for descriptor in found] == ["0x03"]


class _Responder(asyncio.DatagramProtocol):
    def __init__(self, replies: List[str]) -> None:
        self.replies = replies
        self.transport = None
        self.searches = 0

    def connection_made(self, transport) -> None:  # type: ignore[no-untyped-def]
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if data.startswith(b"M-SEARCH") and b"wifi_bulb" in data:
            self.searches += 1
            for reply in self.replies:
                self.transport.sendto(reply.encode(), addr)


@pytest.mark.asyncio
async def test_discover_collects_two_devices() -> None:
    loop = asyncio.get_running_loop()
    replies = [
        _response("0x0a", "127.0.0.1"),
        _response("0x0b", "127.0.0.1", 55444),
        _response("0x0a", "127.0.0.1"),
        "not a response",
    ]
    transport, responder = await loop.create_datagram_endpoint(
        lambda: _Responder(replies), local_addr=("127.0.0.1", 0)
    )
    port = transport.get_extra_info("sockname")[1]
    config = Config(discovery_multicast_address="127.0.0.1", discovery_multicast_port=port)
    manager = ConnectionManager(config)
    service = DiscoveryService(config, manager)
    events = service.events.subscribe()
    try:
        descriptors = await service.discover(timeout=0.3)
    finally:
        transport.close()

    assert responder.searches == 1
    assert sorted(descriptor.id for descriptor in descriptors) == ["0x0a", "0x0b"]
    assert sorted(descriptor.id for descriptor in manager.descriptors()) == ["0x0a", "0x0b"]
    assert events.pending() == 2


@pytest.mark.asyncio
async def test_discover_without_responses_is_empty() -> None:
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        lambda: _Responder([]), local_addr=("127.0.0.1", 0)
    )
    port = transport.get_extra_info("sockname")[1]
    service = DiscoveryService(
        Config(discovery_multicast_address="127.0.0.1", discovery_multicast_port=port)
    )
    try:
        assert await service.discover(timeout=0.1) == []
    finally:
        transport.close()


def test_stale_devices_are_marked_offline_not_removed() -> None:
    config = Config()
    cache = StateCache()
    manager = ConnectionManager(config)
    service = DiscoveryService(config, manager, cache)
    service._record(DeviceDescriptor("0x01", "10.0.0.1", last_seen=1000.0))
    service._record(DeviceDescriptor("0x02", "10.0.0.2", last_seen=1080.0))
    cache.set_online("0x01", True)
    cache.set_online("0x02", True)

    marked = service.mark_offline(now=1100.0)

    assert marked == ["0x01"]
    assert not cache.is_online("0x01")
    assert cache.is_online("0x02")
    assert "0x01" in manager


def test_device_answering_commands_is_not_marked_offline() -> None:
    config = Config()
    cache = StateCache()
    manager = ConnectionManager(config)
    service = DiscoveryService(config, manager, cache)
    service._record(DeviceDescriptor("0x01", "10.0.0.1", last_seen=1000.0))
    cache.set_online("0x01", True)
    # An acknowledged command after the last discovery response.
    manager.touch("0x01", at=1090.0)

    assert service.mark_offline(now=1100.0) == []
    assert cache.is_online("0x01")
