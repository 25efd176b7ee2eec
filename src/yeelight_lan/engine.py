"""Top-level engine wiring discovery, sessions, state and scenes together."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, List, Optional

from .codec import Command
from .config import Config
from .discovery import DiscoveryService
from .effects import FlowEffect
from .events import EventStream
from .health import HealthChange, HealthMonitor
from .logging import get_logger
from .manager import ConnectionManager, SessionFactory
from .models import DeviceDescriptor, DeviceState, Scene, StateChange, StateUpdate
from .persistence import EngineRepository, KeyValueStore, MemoryStore, SqliteStore
from .poller import StatePollerService
from .scenes import SceneApplyResult, SceneOrchestrator
from .state import StateCache


class YeelightEngine:
    """Entry point for UI and automation code.

    Session updates flow into the state cache; discovered devices are
    registered, connected and saved to the repository.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        store: Optional[KeyValueStore] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.config = config or Config()
        self.logger = get_logger("yeelight.engine")
        if store is None:
            store = (
                SqliteStore(Path(self.config.persistence_path).expanduser())
                if self.config.persistence_path
                else MemoryStore()
            )
        self.repository = EngineRepository(store)
        self.health = HealthMonitor(
            ("discovery", "poller"),
            failure_threshold=self.config.subsystem_failure_threshold,
            cooldown_seconds=self.config.subsystem_failure_cooldown,
        )
        self.cache = StateCache(queue_size=self.config.event_queue_size)
        self.manager = ConnectionManager(self.config, session_factory)
        self.discovery = DiscoveryService(self.config, self.manager, self.cache, self.health)
        self.poller = StatePollerService(self.config, self.manager, self.health)
        self.scenes = SceneOrchestrator(self.manager, self.cache, self.config)
        self.manager.updates.add_listener(self._on_session_update)
        self.discovery.events.add_listener(self._on_descriptor)
        self._started = False

    @property
    def state_updates(self) -> EventStream[StateChange]:
        return self.cache.updates

    @property
    def discovery_events(self) -> EventStream[DeviceDescriptor]:
        return self.discovery.events

    @property
    def health_changes(self) -> EventStream[HealthChange]:
        return self.health.changes

    async def start(self, *, discover: bool = True) -> None:
        if self._started:
            return
        self._started = True
        for descriptor in await self.repository.devices():
            self.manager.register(descriptor)
            self.cache.ensure(descriptor.id)
            await self.manager.session_for(descriptor.id)
        if discover:
            await self.discovery.start()
        await self.poller.start()
        self.logger.info(
            "Engine started",
            extra={"devices": len(self.manager.descriptors()), "config": self.config.logging_dict()},
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.poller.stop()
        await self.discovery.stop()
        await self.manager.close_all()
        await self.repository.store.close()
        self.logger.info("Engine stopped")

    async def __aenter__(self) -> "YeelightEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # Devices ---------------------------------------------------------------

    def devices(self) -> List[DeviceDescriptor]:
        return self.manager.descriptors()

    def state(self, device_id: str) -> Optional[DeviceState]:
        return self.cache.get(device_id)

    async def discover(self, timeout: Optional[float] = None) -> List[DeviceDescriptor]:
        return await self.discovery.discover(timeout)

    async def add_device(self, descriptor: DeviceDescriptor) -> DeviceDescriptor:
        """Register a device by address without waiting for discovery."""

        stored = self.manager.register(descriptor)
        self.cache.ensure(stored.id)
        await self.manager.session_for(stored.id)
        await self.repository.save_device(stored)
        return stored

    async def remove_device(self, device_id: str) -> None:
        await self.manager.unregister(device_id)
        self.cache.remove(device_id)
        await self.repository.delete_device(device_id)

    async def send(self, device_id: str, command: Command, timeout: Optional[float] = None) -> List[Any]:
        session = await self.manager.session_for(device_id)
        return await session.send(command, timeout)

    async def refresh(self, device_id: str) -> Optional[DeviceState]:
        session = await self.manager.session_for(device_id)
        await session.refresh_state()
        return self.cache.get(device_id)

    # Scenes ----------------------------------------------------------------

    async def apply_scene(self, scene: Scene, device_ids: Optional[Iterable[str]] = None) -> SceneApplyResult:
        return await self.scenes.apply(scene, device_ids)

    async def update_scene(self, scene: Scene) -> Optional[SceneApplyResult]:
        await self.repository.save_scene(scene)
        return await self.scenes.update(scene)

    async def deactivate_scene(self, scene: Scene, power_off: bool = False) -> SceneApplyResult:
        return await self.scenes.deactivate(scene, power_off=power_off)

    async def apply_effect(self, effect: FlowEffect, device_ids: Iterable[str]) -> SceneApplyResult:
        return await self.scenes.apply_effect(effect, list(device_ids))

    # Event plumbing --------------------------------------------------------

    def _on_session_update(self, update: StateUpdate) -> None:
        self.cache.apply(update)

    async def _on_descriptor(self, descriptor: DeviceDescriptor) -> None:
        self.cache.ensure(descriptor.id)
        await self.manager.session_for(descriptor.id)
        await self.repository.save_device(descriptor)
