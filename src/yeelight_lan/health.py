"""Reconnect backoff and circuit breaking for the engine's background loops."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .events import EventStream
from .logging import get_logger
from .metrics import record_subsystem_failure, record_subsystem_status


@dataclass
class BackoffPolicy:
    """Exponential backoff: ``base * factor ** (failures - 1)``, capped at ``maximum``.

    With ``jitter`` enabled the delay is drawn from the upper half of that
    value, so concurrent sessions reconnecting to a rebooted router spread
    out without ever retrying sooner than half the nominal delay.
    """

    base: float
    factor: float
    maximum: float
    jitter: bool = False
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def nominal(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        base = max(0.0, self.base)
        exponent = failures - 1
        # Stop multiplying once the cap is reached; large exponents overflow.
        value = base
        while exponent and value < self.maximum:
            value *= max(self.factor, 1.0)
            exponent -= 1
        return min(value, self.maximum)

    def delay(self, failures: int) -> float:
        value = self.nominal(failures)
        if not self.jitter or value <= 0:
            return value
        half = value / 2.0
        return half + self.rng(0.0, half)

    def iter_delays(self, attempts: int) -> Tuple[float, ...]:
        """Delays slept between ``attempts`` tries (one fewer than the tries)."""

        return tuple(self.delay(failures) for failures in range(1, max(attempts, 1)))


class HealthStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    SUPPRESSED = "suppressed"
    RECOVERING = "recovering"


@dataclass(frozen=True)
class HealthChange:
    subsystem: str
    status: HealthStatus
    previous: HealthStatus
    failures: int
    error: Optional[str] = None


@dataclass
class SubsystemHealth:
    name: str
    status: HealthStatus = HealthStatus.OK
    failures: int = 0
    suppressions: int = 0
    suppressed_until: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def as_dict(self, now: float) -> Dict[str, Any]:
        remaining = None
        if self.suppressed_until is not None:
            remaining = max(0.0, self.suppressed_until - now)
        return {
            "status": self.status.value,
            "failures": self.failures,
            "suppressions": self.suppressions,
            "suppressed_for": remaining,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Circuit breaker shared by discovery and the state poller.

    After ``failure_threshold`` consecutive failures a subsystem is
    suppressed for ``cooldown_seconds``; :meth:`allow_attempt` reports the
    remaining time so the loop can sleep instead of hammering the network.
    Every status transition is published on :attr:`changes`.
    """

    def __init__(
        self,
        subsystem_names: Iterable[str],
        failure_threshold: int,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._subsystems: Dict[str, SubsystemHealth] = {
            name: SubsystemHealth(name) for name in subsystem_names
        }
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self.changes: EventStream[HealthChange] = EventStream("health")
        self.logger = get_logger("yeelight.health")
        for name in self._subsystems:
            record_subsystem_status(name, HealthStatus.OK.value)

    def _transition(self, entry: SubsystemHealth, status: HealthStatus) -> None:
        previous = entry.status
        entry.status = status
        record_subsystem_status(entry.name, status.value)
        if previous is status:
            return
        self.logger.info(
            "Subsystem health changed",
            extra={"subsystem": entry.name, "status": status.value, "previous": previous.value},
        )
        self.changes.publish(
            HealthChange(entry.name, status, previous, entry.failures, entry.last_error)
        )

    async def record_success(self, subsystem: str) -> None:
        async with self._lock:
            entry = self._subsystems[subsystem]
            entry.failures = 0
            entry.last_error = None
            entry.suppressed_until = None
            entry.last_success = self._clock()
            self._transition(entry, HealthStatus.OK)

    async def record_failure(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        """Count a failure; the threshold-th consecutive one opens the breaker."""

        async with self._lock:
            entry = self._subsystems[subsystem]
            entry.failures += 1
            entry.last_failure = self._clock()
            if error is not None:
                entry.last_error = str(error)
            if entry.failures < self._failure_threshold:
                self._transition(entry, HealthStatus.DEGRADED)
                return
            entry.suppressions += 1
            entry.suppressed_until = entry.last_failure + self._cooldown
            record_subsystem_failure(subsystem)
            self._transition(entry, HealthStatus.SUPPRESSED)

    async def allow_attempt(self, subsystem: str) -> Tuple[bool, float]:
        """Return ``(allowed, seconds_until_allowed)``."""

        async with self._lock:
            entry = self._subsystems[subsystem]
            now = self._clock()
            if entry.suppressed_until is not None and entry.suppressed_until > now:
                return False, entry.suppressed_until - now
            if entry.status is HealthStatus.SUPPRESSED:
                self._transition(entry, HealthStatus.RECOVERING)
            return True, 0.0

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            now = self._clock()
            return {name: entry.as_dict(now) for name, entry in self._subsystems.items()}
