"""Registry of known devices and their sessions."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional

from .config import Config
from .errors import UnknownDeviceError
from .events import EventStream
from .logging import get_logger
from .models import DeviceDescriptor, StateUpdate
from .session import DeviceSession

SessionFactory = Callable[[DeviceDescriptor, Config], DeviceSession]

# Update sources that prove the device is alive.
_SEEN_SOURCES = frozenset({"ack", "poll", "notification"})


class ConnectionManager:
    """Owns descriptors and hands out at most one session per device.

    Sessions are created lazily on the first :meth:`session_for` call and
    reused afterwards. Every session's updates are re-published on
    :attr:`updates`.
    """

    def __init__(self, config: Config, session_factory: Optional[SessionFactory] = None) -> None:
        self.config = config
        self.logger = get_logger("yeelight.manager")
        self.updates: EventStream[StateUpdate] = EventStream(
            "manager", maxsize=config.event_queue_size
        )
        self._session_factory = session_factory or self._default_factory
        self._descriptors: Dict[str, DeviceDescriptor] = {}
        self._sessions: Dict[str, DeviceSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._unsubscribers: Dict[str, Callable[[], None]] = {}

    def _default_factory(self, descriptor: DeviceDescriptor, config: Config) -> DeviceSession:
        return DeviceSession(
            descriptor, config, refresh_on_connect=config.session_refresh_on_connect
        )

    def register(self, descriptor: DeviceDescriptor) -> DeviceDescriptor:
        """Add or refresh a descriptor; returns the stored copy.

        A known device keeps its session. When the address changed, the
        session is pointed at the new one.
        """

        previous = self._descriptors.get(descriptor.id)
        if previous is not None and previous.last_seen > descriptor.last_seen:
            descriptor = descriptor.seen(previous.last_seen)
        self._descriptors[descriptor.id] = descriptor
        if previous is None:
            self.logger.info(
                "Registered device",
                extra={"device_id": descriptor.id, "ip": descriptor.ip, "model": descriptor.model},
            )
            return descriptor
        if (previous.ip, previous.port) != (descriptor.ip, descriptor.port):
            session = self._sessions.get(descriptor.id)
            if session is not None:
                session.update_target(descriptor.ip, descriptor.port)
        return descriptor

    def descriptor(self, device_id: str) -> DeviceDescriptor:
        try:
            return self._descriptors[device_id]
        except KeyError:
            raise UnknownDeviceError(device_id) from None

    def descriptors(self) -> List[DeviceDescriptor]:
        return list(self._descriptors.values())

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._descriptors

    def existing_session(self, device_id: str) -> Optional[DeviceSession]:
        return self._sessions.get(device_id)

    def sessions(self) -> List[DeviceSession]:
        return list(self._sessions.values())

    async def session_for(self, device_id: str) -> DeviceSession:
        """Return the device's session, creating and starting it on first use."""

        session = self._sessions.get(device_id)
        if session is not None:
            return session
        descriptor = self.descriptor(device_id)
        lock = self._locks.setdefault(device_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(device_id)
            if session is not None:
                return session
            session = self._session_factory(descriptor, self.config)
            self._unsubscribers[device_id] = session.updates.add_listener(self._on_session_update)
            self._sessions[device_id] = session
            session.start()
            self.logger.debug("Created device session", extra={"device_id": device_id})
            return session

    def _on_session_update(self, update: StateUpdate) -> None:
        if update.source in _SEEN_SOURCES or update.fields.get("online") is True:
            self.touch(update.device_id)
        self.updates.publish(update)

    def touch(self, device_id: str, at: Optional[float] = None) -> None:
        """Refresh a device's ``last_seen`` after it answered or reported state."""

        descriptor = self._descriptors.get(device_id)
        if descriptor is not None:
            self._descriptors[device_id] = descriptor.seen(at)

    async def close_session(self, device_id: str) -> None:
        session = self._sessions.pop(device_id, None)
        unsubscribe = self._unsubscribers.pop(device_id, None)
        if session is not None:
            await session.close()
        # The final offline update from close() still reaches subscribers.
        if unsubscribe is not None:
            unsubscribe()

    async def unregister(self, device_id: str) -> None:
        """Forget a device entirely, closing its session first."""

        await self.close_session(device_id)
        self._descriptors.pop(device_id, None)
        self._locks.pop(device_id, None)
        self.logger.info("Unregistered device", extra={"device_id": device_id})

    async def close_all(self) -> None:
        """Close every session; pending requests fail with ``SessionClosedError``."""

        device_ids = list(self._sessions)
        results = await asyncio.gather(
            *(self.close_session(device_id) for device_id in device_ids),
            return_exceptions=True,
        )
        for device_id, result in zip(device_ids, results):
            if isinstance(result, Exception):
                self.logger.error(
                    "Failed to close device session",
                    extra={"device_id": device_id, "error": repr(result)},
                )
        if device_ids:
            self.logger.info("Closed device sessions", extra={"count": len(device_ids)})
