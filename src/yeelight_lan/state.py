"""In-memory, last-write-wins view of every known device's state."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .events import EventStream
from .logging import get_logger
from .metrics import record_state_update
from .models import STATE_FIELDS, DeviceState, StateChange, StateUpdate


@dataclass(frozen=True)
class OptimisticWrite:
    """Token returned by :meth:`StateCache.write_optimistic` for a later revert."""

    device_id: str
    stamp: float
    previous: Mapping[str, Any]
    previous_stamps: Mapping[str, float]


class StateCache:
    """Authoritative in-memory device state.

    Every write goes through :meth:`apply`, which merges field by field using
    the per-field stamps: a value only replaces the current one if its stamp
    is not older. Writes for different devices never touch the same entry, and
    racing writes for one device settle on the newest value.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        queue_size: int = 1000,
    ) -> None:
        self._states: Dict[str, DeviceState] = {}
        self._clock = clock
        self.updates: EventStream[StateChange] = EventStream("state", maxsize=queue_size)
        self.logger = get_logger("yeelight.state")

    def get(self, device_id: str) -> Optional[DeviceState]:
        state = self._states.get(device_id)
        return state.copy() if state is not None else None

    def all(self) -> List[Tuple[str, DeviceState]]:
        return [(device_id, state.copy()) for device_id, state in self._states.items()]

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._states

    def is_online(self, device_id: str) -> bool:
        state = self._states.get(device_id)
        return bool(state and state.online)

    def ensure(self, device_id: str) -> DeviceState:
        state = self._states.get(device_id)
        if state is None:
            state = DeviceState()
            self._states[device_id] = state
        return state

    def remove(self, device_id: str) -> None:
        self._states.pop(device_id, None)

    def apply(self, update: StateUpdate) -> Tuple[str, ...]:
        """Merge ``update`` into the device's entry and return the changed fields."""

        state = self.ensure(update.device_id)
        accepted = False
        changed: List[str] = []
        for name, value in update.fields.items():
            if name not in STATE_FIELDS:
                continue
            if update.stamp < state.stamps.get(name, float("-inf")):
                continue
            accepted = True
            state.stamps[name] = update.stamp
            if getattr(state, name) != value:
                setattr(state, name, value)
                changed.append(name)
        if accepted:
            state.updated_at = time.time()
            record_state_update(update.source)
        if changed:
            self.logger.debug(
                "Device state changed",
                extra={
                    "device_id": update.device_id,
                    "fields": changed,
                    "source": update.source,
                },
            )
            self.updates.publish(
                StateChange(update.device_id, state.copy(), tuple(changed), update.source)
            )
        return tuple(changed)

    def set_online(self, device_id: str, online: bool, source: str = "connection") -> None:
        self.apply(StateUpdate(device_id, {"online": online}, source, self._clock()))

    def write_optimistic(self, device_id: str, fields: Mapping[str, Any]) -> OptimisticWrite:
        """Apply ``fields`` ahead of the device's confirmation.

        A later ack or notification carries a newer stamp and supersedes the
        optimistic values without any extra bookkeeping.
        """

        state = self.ensure(device_id)
        previous = {name: getattr(state, name) for name in fields if name in STATE_FIELDS}
        previous_stamps = {
            name: state.stamps[name] for name in previous if name in state.stamps
        }
        stamp = self._clock()
        self.apply(StateUpdate(device_id, dict(fields), "optimistic", stamp))
        return OptimisticWrite(device_id, stamp, previous, previous_stamps)

    def revert(self, token: OptimisticWrite) -> Tuple[str, ...]:
        """Undo an optimistic write for fields nobody has overwritten since."""

        state = self._states.get(token.device_id)
        if state is None:
            return ()
        changed: List[str] = []
        for name, value in token.previous.items():
            if state.stamps.get(name) != token.stamp:
                continue
            if name in token.previous_stamps:
                state.stamps[name] = token.previous_stamps[name]
            else:
                state.stamps.pop(name, None)
            if getattr(state, name) != value:
                setattr(state, name, value)
                changed.append(name)
        if changed:
            state.updated_at = time.time()
            record_state_update("revert")
            self.updates.publish(
                StateChange(token.device_id, state.copy(), tuple(changed), "revert")
            )
        return tuple(changed)
