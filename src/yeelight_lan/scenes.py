"""Apply scenes and flow effects across many devices at once."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from . import effects
from .codec import Command
from .config import Config
from .effects import FlowEffect
from .errors import (
    DeviceConnectionError,
    ProtocolError,
    SceneApplyError,
    UnknownDeviceError,
    ValidationError,
)
from .logging import get_logger
from .manager import ConnectionManager
from .metrics import record_scene_outcome
from .models import ColorMode, DesiredState, DeviceDescriptor, Scene, SceneStatus, SceneTarget
from .state import StateCache


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceOutcome:
    device_id: str
    status: OutcomeStatus
    reason: Optional[str] = None


@dataclass
class SceneApplyResult:
    """Per-device outcome of applying (or deactivating) a scene."""

    scene_name: str
    outcomes: Dict[str, DeviceOutcome] = field(default_factory=dict)

    def _with(self, status: OutcomeStatus) -> List[DeviceOutcome]:
        return [outcome for outcome in self.outcomes.values() if outcome.status is status]

    @property
    def succeeded(self) -> List[DeviceOutcome]:
        return self._with(OutcomeStatus.SUCCESS)

    @property
    def skipped(self) -> List[DeviceOutcome]:
        return self._with(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[DeviceOutcome]:
        return self._with(OutcomeStatus.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> "SceneApplyResult":
        if self.failed:
            raise SceneApplyError(self)
        return self


def _target_fields(target: SceneTarget) -> Dict[str, Any]:
    if isinstance(target, FlowEffect):
        return {"power": True, "flowing": True}
    return target.state_fields()


class SceneOrchestrator:
    """Fans scene targets out to device sessions and collects the outcomes.

    Each device is handled independently: an offline device is skipped, a
    failing device is reported with its reason and has its optimistic state
    rolled back, and neither affects the others.
    """

    def __init__(self, manager: ConnectionManager, cache: StateCache, config: Config) -> None:
        self.manager = manager
        self.cache = cache
        self.config = config
        self.logger = get_logger("yeelight.scenes")
        self._active: Dict[str, tuple[str, ...]] = {}

    def active_devices(self, scene_name: str) -> tuple[str, ...]:
        return self._active.get(scene_name, ())

    async def apply(self, scene: Scene, device_ids: Optional[Iterable[str]] = None) -> SceneApplyResult:
        """Apply ``scene`` to ``device_ids`` (all of its targets by default).

        Never raises for per-device problems; see :meth:`SceneApplyResult.raise_for_failures`.
        """

        requested = tuple(scene.targets) if device_ids is None else tuple(dict.fromkeys(device_ids))
        result = SceneApplyResult(scene.name)
        scene.status = SceneStatus.ACTIVATING
        work = []
        for device_id in requested:
            target = scene.targets.get(device_id)
            if target is None:
                result.outcomes[device_id] = DeviceOutcome(
                    device_id, OutcomeStatus.SKIPPED, "not part of scene"
                )
                continue
            work.append(self._apply_device(device_id, target))
        for outcome in await asyncio.gather(*work):
            result.outcomes[outcome.device_id] = outcome

        self._active[scene.name] = requested
        scene.status = SceneStatus.FAILED if result.failed else SceneStatus.ACTIVE
        self._log_result("Scene applied", result)
        return result

    async def apply_effect(self, effect: FlowEffect, device_ids: Sequence[str]) -> SceneApplyResult:
        """Start the same flow effect on every listed device."""

        scene = Scene(effect.name or "effect", {device_id: effect for device_id in device_ids})
        return await self.apply(scene, device_ids)

    async def update(self, scene: Scene) -> Optional[SceneApplyResult]:
        """Re-apply an active scene to the devices it was last applied to."""

        if scene.status not in (SceneStatus.ACTIVE, SceneStatus.FAILED) or scene.name not in self._active:
            self.logger.debug("Scene not active; nothing to update", extra={"scene": scene.name})
            return None
        return await self.apply(scene, self._active[scene.name])

    async def deactivate(self, scene: Scene, power_off: bool = False) -> SceneApplyResult:
        """Stop the scene's effects and reset its devices to the baseline.

        The baseline is the configured brightness and color temperature;
        devices are switched off only when ``power_off`` is true.
        """

        device_ids = self._active.pop(scene.name, tuple(scene.targets))
        result = SceneApplyResult(scene.name)
        outcomes = await asyncio.gather(
            *(
                self._deactivate_device(device_id, scene.targets.get(device_id), power_off)
                for device_id in device_ids
            )
        )
        for outcome in outcomes:
            result.outcomes[outcome.device_id] = outcome
        scene.status = SceneStatus.INACTIVE
        self._log_result("Scene deactivated", result)
        return result

    # Per-device work -------------------------------------------------------

    async def _apply_device(self, device_id: str, target: SceneTarget) -> DeviceOutcome:
        try:
            descriptor = self.manager.descriptor(device_id)
            commands = self.commands_for(descriptor, target)
        except UnknownDeviceError:
            return self._outcome(device_id, OutcomeStatus.SKIPPED, "unknown device")
        except ValidationError as exc:
            return self._outcome(device_id, OutcomeStatus.FAILED, str(exc))
        return await self._run(device_id, commands, _target_fields(target))

    async def _deactivate_device(
        self, device_id: str, target: Optional[SceneTarget], power_off: bool
    ) -> DeviceOutcome:
        try:
            descriptor = self.manager.descriptor(device_id)
        except UnknownDeviceError:
            return self._outcome(device_id, OutcomeStatus.SKIPPED, "unknown device")
        state = self.cache.get(device_id)
        commands: List[Command] = []
        fields: Dict[str, Any] = {}
        if isinstance(target, FlowEffect) or (state is not None and state.flowing):
            commands.append(effects.stop_flow())
            fields["flowing"] = False
        if power_off:
            commands.append(effects.set_power(False, self.config.scene_transition_ms))
            fields["power"] = False
        else:
            duration = self.config.scene_transition_ms
            if descriptor.capabilities.color_temperature:
                commands.append(
                    effects.set_color_temperature(self.config.baseline_color_temperature, duration)
                )
                fields.update(
                    ct=self.config.baseline_color_temperature, color_mode=ColorMode.TEMPERATURE
                )
            commands.append(effects.set_brightness(self.config.baseline_brightness, duration))
            fields["brightness"] = self.config.baseline_brightness
        return await self._run(device_id, commands, fields)

    async def _run(
        self, device_id: str, commands: Sequence[Command], fields: Mapping[str, Any]
    ) -> DeviceOutcome:
        try:
            session = await self.manager.session_for(device_id)
        except UnknownDeviceError:
            return self._outcome(device_id, OutcomeStatus.SKIPPED, "unknown device")
        if not self.cache.is_online(device_id):
            return self._outcome(device_id, OutcomeStatus.SKIPPED, "device offline")

        token = self.cache.write_optimistic(device_id, fields)
        try:
            for command in commands:
                await session.send(command)
        except (ProtocolError, DeviceConnectionError) as exc:
            self.cache.revert(token)
            return self._outcome(device_id, OutcomeStatus.FAILED, str(exc))
        return self._outcome(device_id, OutcomeStatus.SUCCESS)

    def commands_for(self, descriptor: DeviceDescriptor, target: SceneTarget) -> List[Command]:
        """Commands that bring one device to ``target``.

        Raises :class:`ValidationError` for values out of range or features
        the device lacks.
        """

        combined = self.config.scene_combined_commands and descriptor.supports("set_scene")
        if isinstance(target, FlowEffect):
            self._require(descriptor, "start_cf")
            if combined:
                return [effects.set_scene_flow(target)]
            return [effects.set_power(True), effects.start_flow(target)]

        duration = self.config.scene_transition_ms if target.transition_ms is None else target.transition_ms
        if target.power is False:
            return [effects.set_power(False, duration)]

        mode = target.color_mode
        if mode is ColorMode.RGB:
            self._require(descriptor, "set_rgb")
        elif mode is ColorMode.TEMPERATURE:
            self._require(descriptor, "set_ct_abx")
        elif mode is ColorMode.HSV:
            self._require(descriptor, "set_hsv")

        if combined and mode is not None and target.brightness is not None and target.power is not False:
            if target.rgb is not None:
                return [effects.set_scene_color(*target.rgb, target.brightness)]
            if target.ct is not None:
                return [effects.set_scene_temperature(target.ct, target.brightness)]
            assert target.hue is not None and target.sat is not None
            return [effects.set_scene_hsv(target.hue, target.sat, target.brightness)]

        commands: List[Command] = []
        if target.power:
            commands.append(effects.set_power(True, duration))
        if target.rgb is not None:
            commands.append(effects.set_rgb(*target.rgb, duration_ms=duration))
        elif target.ct is not None:
            commands.append(effects.set_color_temperature(target.ct, duration))
        elif target.hue is not None and target.sat is not None:
            commands.append(effects.set_hsv(target.hue, target.sat, duration))
        if target.brightness is not None:
            commands.append(effects.set_brightness(target.brightness, duration))
        return commands

    @staticmethod
    def _require(descriptor: DeviceDescriptor, method: str) -> None:
        if not descriptor.supports(method):
            raise ValidationError(f"{descriptor.id} does not support {method}")

    def _outcome(self, device_id: str, status: OutcomeStatus, reason: Optional[str] = None) -> DeviceOutcome:
        record_scene_outcome(status.value)
        if status is OutcomeStatus.FAILED:
            self.logger.warning(
                "Scene step failed on device", extra={"device_id": device_id, "reason": reason}
            )
        return DeviceOutcome(device_id, status, reason)

    def _log_result(self, message: str, result: SceneApplyResult) -> None:
        self.logger.info(
            message,
            extra={
                "scene": result.scene_name,
                "succeeded": len(result.succeeded),
                "skipped": len(result.skipped),
                "failed": len(result.failed),
            },
        )
