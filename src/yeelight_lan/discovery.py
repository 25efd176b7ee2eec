"""SSDP-style discovery of Yeelight devices on the local network."""

from __future__ import annotations

import asyncio
import contextlib
import socket
import struct
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from .config import Config
from .errors import DiscoveryError
from .events import EventStream
from .health import BackoffPolicy, HealthMonitor
from .logging import get_logger
from .manager import ConnectionManager
from .metrics import observe_discovery_cycle, record_discovery_error, record_discovery_response
from .models import DEFAULT_PORT, DeviceDescriptor
from .state import StateCache

SEARCH_TARGET = "wifi_bulb"

_RESPONSE_START_LINES = ("HTTP/1.1 200 OK", "NOTIFY * HTTP/1.1")


def search_payload(address: str, port: int) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {address}:{port}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"ST: {SEARCH_TARGET}\r\n"
    ).encode("ascii")


def _create_multicast_socket(address: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    with contextlib.suppress(AttributeError):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
    sock.bind(("", port))

    group = socket.inet_aton(address)
    mreq = struct.pack("4s4s", group, socket.inet_aton("0.0.0.0"))
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
    sock.setblocking(False)
    return sock


def _create_search_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
    sock.bind(("", 0))
    sock.setblocking(False)
    return sock


def parse_discovery_response(
    text: str, addr: Tuple[str, int], seen_at: Optional[float] = None
) -> DeviceDescriptor:
    """Build a descriptor from a search response or ``NOTIFY`` advertisement.

    Header names are matched case-insensitively. ``id`` and a
    ``yeelight://host:port`` location are required; the sender address is
    used when the location has no host.
    """

    lines = text.replace("\r\n", "\n").split("\n")
    if not lines or lines[0].strip().upper() not in _RESPONSE_START_LINES:
        raise DiscoveryError(f"Unexpected discovery start line: {lines[0][:40]!r}")
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        key, sep, value = line.partition(":")
        if not sep:
            continue
        headers[key.strip().lower()] = value.strip()

    device_id = headers.get("id")
    if not device_id:
        raise DiscoveryError("Discovery response has no id")
    location = headers.get("location")
    if not location:
        raise DiscoveryError(f"Discovery response for {device_id} has no location")
    parsed = urlsplit(location)
    if parsed.scheme != "yeelight":
        raise DiscoveryError(f"Unsupported location {location!r}")
    try:
        port = parsed.port or DEFAULT_PORT
    except ValueError as exc:
        raise DiscoveryError(f"Invalid port in location {location!r}") from exc

    return DeviceDescriptor(
        id=device_id,
        ip=parsed.hostname or addr[0],
        port=port,
        model=headers.get("model") or None,
        fw_ver=headers.get("fw_ver") or None,
        support=frozenset(headers.get("support", "").split()),
        name=headers.get("name") or None,
        last_seen=time.time() if seen_at is None else seen_at,
    )


def dedupe_descriptors(descriptors: Iterable[DeviceDescriptor]) -> List[DeviceDescriptor]:
    """Collapse descriptors by id, keeping the most recently seen one."""

    latest: Dict[str, DeviceDescriptor] = {}
    for descriptor in descriptors:
        current = latest.get(descriptor.id)
        if current is None or descriptor.last_seen >= current.last_seen:
            latest[descriptor.id] = descriptor
    return list(latest.values())


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Asyncio protocol turning discovery datagrams into descriptors."""

    def __init__(self, on_descriptor: Callable[[DeviceDescriptor], None], source: str) -> None:
        self.on_descriptor = on_descriptor
        self.source = source
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.logger = get_logger("yeelight.discovery.protocol")

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.logger.debug(
            "Discovery transport ready",
            extra={"local": transport.get_extra_info("sockname"), "source": self.source},
        )

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.logger.error(
                "Discovery transport error",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.transport = None

    def error_received(self, exc: Exception) -> None:
        record_discovery_error("socket")
        self.logger.warning("Discovery socket error", extra={"error": str(exc)})

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            message = data.decode("utf-8")
        except UnicodeDecodeError:
            record_discovery_error("non_utf8")
            self.logger.debug("Ignoring non-UTF8 discovery response", extra={"from": addr})
            return
        if message.startswith("M-SEARCH"):
            # Our own search (or another controller's) looped back on the group.
            return
        try:
            descriptor = parse_discovery_response(message, addr)
        except DiscoveryError as exc:
            record_discovery_error("invalid_payload")
            self.logger.warning(
                "Failed to parse discovery response",
                extra={"from": addr, "error": str(exc)},
            )
            return
        record_discovery_response(self.source)
        self.logger.debug(
            "Received discovery response",
            extra={"device_id": descriptor.id, "ip": descriptor.ip, "source": self.source},
        )
        self.on_descriptor(descriptor)

    def send_search(self, target: Tuple[str, int]) -> None:
        if not self.transport:
            raise DiscoveryError("Discovery transport not ready")
        try:
            self.transport.sendto(search_payload(*target), target)
        except OSError as exc:
            record_discovery_error("send")
            raise DiscoveryError(f"Failed to send discovery search: {exc}") from exc


class DiscoveryService:
    """Finds devices with one-shot searches and an optional background loop.

    Descriptors that are new or changed are registered with the connection
    manager (when given) and published on :attr:`events`.
    """

    def __init__(
        self,
        config: Config,
        manager: Optional[ConnectionManager] = None,
        cache: Optional[StateCache] = None,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.manager = manager
        self.cache = cache
        self.logger = get_logger("yeelight.discovery")
        self.events: EventStream[DeviceDescriptor] = EventStream(
            "discovery", maxsize=config.event_queue_size
        )
        self._known: Dict[str, DeviceDescriptor] = {}
        self._health = health or HealthMonitor(
            ("discovery",),
            failure_threshold=config.subsystem_failure_threshold,
            cooldown_seconds=config.subsystem_failure_cooldown,
        )
        self._backoff = BackoffPolicy(
            base=config.session_reconnect_base,
            factor=config.session_reconnect_factor,
            maximum=config.discovery_interval,
        )
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._listener: Optional[asyncio.DatagramTransport] = None

    def known(self) -> List[DeviceDescriptor]:
        return list(self._known.values())

    async def discover(self, timeout: Optional[float] = None) -> List[DeviceDescriptor]:
        """Search once and collect responses for the whole ``timeout`` window.

        No responses is an empty result, not an error.
        """

        timeout = self.config.discovery_timeout if timeout is None else timeout
        started = time.perf_counter()
        result = "ok"
        found: List[DeviceDescriptor] = []
        loop = asyncio.get_running_loop()
        try:
            try:
                transport, protocol = await loop.create_datagram_endpoint(
                    lambda: DiscoveryProtocol(found.append, "search"),
                    sock=_create_search_socket(),
                )
            except OSError as exc:
                record_discovery_error("socket")
                raise DiscoveryError(f"Cannot open discovery socket: {exc}") from exc
            try:
                protocol.send_search(
                    (self.config.discovery_multicast_address, self.config.discovery_multicast_port)
                )
                await asyncio.sleep(timeout)
            finally:
                transport.close()
        except Exception:
            result = "error"
            raise
        finally:
            observe_discovery_cycle(result, time.perf_counter() - started)

        descriptors = dedupe_descriptors(found)
        for descriptor in descriptors:
            self._record(descriptor)
        self.logger.info(
            "Discovery cycle complete",
            extra={"responses": len(found), "devices": len(descriptors)},
        )
        return descriptors

    def _record(self, descriptor: DeviceDescriptor) -> None:
        previous = self._known.get(descriptor.id)
        self._known[descriptor.id] = descriptor
        if self.manager is not None:
            self.manager.register(descriptor)
        if previous is None or previous != descriptor:
            if previous is None:
                self.logger.info(
                    "Discovered device",
                    extra={"device_id": descriptor.id, "ip": descriptor.ip, "model": descriptor.model},
                )
            self.events.publish(descriptor)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        if self.config.discovery_listen_advertisements:
            await self._open_listener()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Discovery service started",
            extra={
                "multicast": self.config.discovery_multicast_address,
                "port": self.config.discovery_multicast_port,
                "interval": self.config.discovery_interval,
            },
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        self.logger.info("Discovery service stopped")

    async def _open_listener(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            sock = _create_multicast_socket(
                self.config.discovery_multicast_address,
                self.config.discovery_multicast_port,
            )
            transport, _ = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self._record_advertisement, "advertisement"),
                sock=sock,
            )
        except OSError as exc:
            record_discovery_error("socket")
            self.logger.warning(
                "Cannot listen for device advertisements", extra={"error": str(exc)}
            )
            return
        self._listener = transport  # type: ignore[assignment]

    def _record_advertisement(self, descriptor: DeviceDescriptor) -> None:
        self._record(descriptor)

    async def _run(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            allowed, remaining = await self._health.allow_attempt("discovery")
            if not allowed:
                self.logger.debug(
                    "Discovery suppressed", extra={"remaining_seconds": round(remaining, 3)}
                )
                await self._wait(remaining)
                continue
            delay = self.config.discovery_interval
            try:
                await self.discover()
            except DiscoveryError as exc:
                failures += 1
                delay = self._backoff.delay(failures)
                await self._health.record_failure("discovery", exc)
                self.logger.warning(
                    "Discovery cycle failed",
                    extra={"error": str(exc), "retry_in": round(delay, 3)},
                )
            else:
                failures = 0
                await self._health.record_success("discovery")
            self.mark_offline()
            await self._wait(delay)

    async def _wait(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    def mark_offline(self, now: Optional[float] = None) -> List[str]:
        """Mark devices not seen within the grace window offline; they stay registered.

        A device counts as seen when it answered discovery or, through the
        manager, a command, poll or notification. Devices with a ready
        session are left alone: the open socket is the stronger signal, and a
        session that loses its socket publishes ``online: False`` itself. So
        with sessions in play this only catches devices whose session has not
        connected or reported yet; without a manager it is the sole liveness
        check.
        """

        if self.cache is None:
            return []
        now = time.time() if now is None else now
        cutoff = now - self.config.discovery_offline_grace
        marked: List[str] = []
        for descriptor in self._known.values():
            last_seen = descriptor.last_seen
            if self.manager is not None and descriptor.id in self.manager:
                last_seen = max(last_seen, self.manager.descriptor(descriptor.id).last_seen)
            if last_seen >= cutoff or not self.cache.is_online(descriptor.id):
                continue
            session = self.manager.existing_session(descriptor.id) if self.manager else None
            if session is not None and session.ready:
                continue
            self.cache.set_online(descriptor.id, False, source="discovery")
            marked.append(descriptor.id)
        if marked:
            self.logger.info("Marked unresponsive devices offline", extra={"device_ids": marked})
        return marked
