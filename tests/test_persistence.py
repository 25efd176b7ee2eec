from pathlib import Path

import pytest

from yeelight_lan import effects
from yeelight_lan.models import DesiredState, DeviceDescriptor, Scene, SceneStatus
from yeelight_lan.persistence import EngineRepository, MemoryStore, SqliteStore


@pytest.mark.asyncio
async def test_memory_store_basic_operations() -> None:
    store = MemoryStore()
    await store.save("scene:a", {"x": 1})
    await store.save("device:b", [1, 2])
    assert await store.load("scene:a") == {"x": 1}
    assert await store.keys("scene:") == ["scene:a"]
    await store.delete("scene:a")
    assert await store.load("scene:a") is None


@pytest.mark.asyncio
async def test_memory_store_rejects_non_json_values() -> None:
    with pytest.raises(TypeError):
        await MemoryStore().save("bad", object())


@pytest.mark.asyncio
async def test_repository_round_trips_scenes_with_effects() -> None:
    repository = EngineRepository(MemoryStore())
    scene = Scene(
        "movie",
        {
            "a": DesiredState(power=True, rgb=(10, 20, 30), brightness=25, transition_ms=500),
            "b": effects.candlelight(),
        },
        SceneStatus.ACTIVE,
    )

    await repository.save_scene(scene)
    loaded = await repository.load_scene("movie")

    assert loaded is not None
    assert loaded.targets == scene.targets
    assert loaded.status is SceneStatus.INACTIVE
    assert [s.name for s in await repository.scenes()] == ["movie"]


@pytest.mark.asyncio
async def test_repository_devices_and_effects(tmp_path: Path) -> None:
    store = SqliteStore(tmp_path / "engine.db")
    repository = EngineRepository(store)
    descriptor = DeviceDescriptor(
        "0x01", "10.0.0.3", model="stripe", support=frozenset({"set_rgb"}), last_seen=12.5
    )
    try:
        await repository.save_device(descriptor)
        await repository.save_device(descriptor)
        await repository.save_effect(effects.sunset())

        devices = await repository.devices()
        assert devices == [descriptor]
        assert devices[0].last_seen == 12.5
        effect = await repository.load_effect("sunset")
        assert effect == effects.sunset()

        await repository.delete_device("0x01")
        assert await repository.devices() == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unnamed_effect_cannot_be_saved() -> None:
    repository = EngineRepository(MemoryStore())
    effect = effects.FlowEffect((effects.FlowTransition.sleep(100),))
    with pytest.raises(ValueError):
        await repository.save_effect(effect)
