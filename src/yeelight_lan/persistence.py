"""Key-value persistence for scenes, devices and user effects."""

from __future__ import annotations

import abc
import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .effects import FlowEffect, effect_from_dict, effect_to_dict
from .logging import get_logger
from .models import DesiredState, DeviceDescriptor, Scene, SceneStatus, SceneTarget

T = TypeVar("T")

BUSY_TIMEOUT_MS = 5000

SCENE_PREFIX = "scene:"
DEVICE_PREFIX = "device:"
EFFECT_PREFIX = "effect:"


class KeyValueStore(abc.ABC):
    """Storage boundary: JSON-compatible values under string keys."""

    @abc.abstractmethod
    async def save(self, key: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def load(self, key: str) -> Optional[Any]: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    async def keys(self, prefix: str = "") -> List[str]: ...

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def save(self, key: str, value: Any) -> None:
        # Serialize eagerly so non-JSON values fail here like they would on disk.
        self._data[key] = json.dumps(value)

    async def load(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


class SqliteStore(KeyValueStore):
    """SQLite-backed store; one shared connection serialized by a lock."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.logger = get_logger("yeelight.persistence")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def save(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        await self._run(
            lambda conn: conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, payload),
            )
        )

    async def load(self, key: str) -> Optional[Any]:
        row = await self._run(
            lambda conn: conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        )
        return None if row is None else json.loads(row[0])

    async def delete(self, key: str) -> None:
        await self._run(lambda conn: conn.execute("DELETE FROM kv WHERE key = ?", (key,)))

    async def keys(self, prefix: str = "") -> List[str]:
        rows = await self._run(
            lambda conn: conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        )
        return [row[0] for row in rows]

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def _run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._closed:
            raise RuntimeError("Store is closed")
        async with self._lock:
            return await asyncio.to_thread(self._run_with_connection, operation)

    def _run_with_connection(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
            conn.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
            conn.commit()
            self._conn = conn
        with self._conn:
            return operation(self._conn)


def _target_to_dict(target: SceneTarget) -> Dict[str, Any]:
    if isinstance(target, FlowEffect):
        return {"effect": effect_to_dict(target)}
    return {"state": target.to_dict()}


def _target_from_dict(data: Dict[str, Any]) -> SceneTarget:
    if "effect" in data:
        return effect_from_dict(data["effect"])
    return DesiredState.from_dict(data.get("state", {}))


def scene_to_dict(scene: Scene) -> Dict[str, Any]:
    return {
        "name": scene.name,
        "targets": {device_id: _target_to_dict(target) for device_id, target in scene.targets.items()},
    }


def scene_from_dict(data: Dict[str, Any]) -> Scene:
    targets = {device_id: _target_from_dict(raw) for device_id, raw in data.get("targets", {}).items()}
    # Activation state is runtime-only.
    return Scene(str(data["name"]), targets, SceneStatus.INACTIVE)


def descriptor_to_dict(descriptor: DeviceDescriptor) -> Dict[str, Any]:
    return {
        "id": descriptor.id,
        "ip": descriptor.ip,
        "port": descriptor.port,
        "model": descriptor.model,
        "fw_ver": descriptor.fw_ver,
        "support": sorted(descriptor.support),
        "name": descriptor.name,
        "last_seen": descriptor.last_seen,
    }


def descriptor_from_dict(data: Dict[str, Any]) -> DeviceDescriptor:
    return DeviceDescriptor(
        id=str(data["id"]),
        ip=str(data["ip"]),
        port=int(data.get("port", 55443)),
        model=data.get("model"),
        fw_ver=data.get("fw_ver"),
        support=frozenset(data.get("support") or ()),
        name=data.get("name"),
        last_seen=float(data.get("last_seen", 0.0)),
    )


class EngineRepository:
    """Typed access to scenes, known devices and saved effects in a store."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def save_scene(self, scene: Scene) -> None:
        await self.store.save(SCENE_PREFIX + scene.name, scene_to_dict(scene))

    async def load_scene(self, name: str) -> Optional[Scene]:
        data = await self.store.load(SCENE_PREFIX + name)
        return None if data is None else scene_from_dict(data)

    async def delete_scene(self, name: str) -> None:
        await self.store.delete(SCENE_PREFIX + name)

    async def scenes(self) -> List[Scene]:
        result = []
        for key in await self.store.keys(SCENE_PREFIX):
            data = await self.store.load(key)
            if data is not None:
                result.append(scene_from_dict(data))
        return result

    async def save_device(self, descriptor: DeviceDescriptor) -> None:
        await self.store.save(DEVICE_PREFIX + descriptor.id, descriptor_to_dict(descriptor))

    async def delete_device(self, device_id: str) -> None:
        await self.store.delete(DEVICE_PREFIX + device_id)

    async def devices(self) -> List[DeviceDescriptor]:
        result = []
        for key in await self.store.keys(DEVICE_PREFIX):
            data = await self.store.load(key)
            if data is not None:
                result.append(descriptor_from_dict(data))
        return result

    async def save_effect(self, effect: FlowEffect) -> None:
        if not effect.name:
            raise ValueError("Only named effects can be saved")
        await self.store.save(EFFECT_PREFIX + effect.name, effect_to_dict(effect))

    async def load_effect(self, name: str) -> Optional[FlowEffect]:
        data = await self.store.load(EFFECT_PREFIX + name)
        return None if data is None else effect_from_dict(data)

    async def delete_effect(self, name: str) -> None:
        await self.store.delete(EFFECT_PREFIX + name)

    async def effects(self) -> List[FlowEffect]:
        result = []
        for key in await self.store.keys(EFFECT_PREFIX):
            data = await self.store.load(key)
            if data is not None:
                result.append(effect_from_dict(data))
        return result
