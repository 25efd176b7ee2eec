"""Background state refresh for connected devices."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Optional

from .config import Config
from .errors import DeviceConnectionError, ProtocolError
from .health import BackoffPolicy, HealthMonitor
from .logging import get_logger
from .manager import ConnectionManager
from .metrics import record_poll
from .session import DeviceSession


class StatePollerService:
    """Periodically re-read properties of every ready session with ``get_prop``.

    Notifications keep the cache current while a connection is up; polling
    catches changes a device did not report (for example after a firmware
    hiccup) and runs under the same circuit breaker as the other loops.
    """

    def __init__(
        self,
        config: Config,
        manager: ConnectionManager,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.manager = manager
        self.logger = get_logger("yeelight.poller")
        self._health = health or HealthMonitor(
            ("poller",),
            failure_threshold=config.subsystem_failure_threshold,
            cooldown_seconds=config.subsystem_failure_cooldown,
        )
        self._backoff = BackoffPolicy(
            base=config.session_reconnect_base,
            factor=config.session_reconnect_factor,
            maximum=config.poll_interval,
        )
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task or not self.config.poll_enabled:
            if not self.config.poll_enabled:
                self.logger.info("State polling disabled; skipping poller startup.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "State poller started", extra={"interval_seconds": self.config.poll_interval}
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self.logger.info("State poller stopped")

    async def _run(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            await self._sleep_with_stop(self.config.poll_interval if not failures else self._backoff.delay(failures))
            if self._stop_event.is_set():
                break
            allowed, remaining = await self._health.allow_attempt("poller")
            if not allowed:
                self.logger.warning(
                    "Poller suppressed after failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await self._sleep_with_stop(remaining)
                continue
            polled, failed = await self.run_cycle()
            if polled and failed == polled:
                failures += 1
                await self._health.record_failure("poller")
            else:
                failures = 0
                await self._health.record_success("poller")

    async def run_cycle(self) -> tuple[int, int]:
        """Poll every ready session once; returns ``(polled, failed)``."""

        sessions = [session for session in self.manager.sessions() if session.ready]
        if not sessions:
            return 0, 0
        results = await asyncio.gather(*(self._poll_session(session) for session in sessions))
        return len(results), results.count(False)

    async def _poll_session(self, session: DeviceSession) -> bool:
        started = time.perf_counter()
        status = "failure"
        try:
            fields = await session.refresh_state()
            status = "success_state" if fields else "success"
            return True
        except (ProtocolError, DeviceConnectionError) as exc:
            self.logger.warning(
                "Poll failed", extra={"device_id": session.device_id, "error": str(exc)}
            )
            status = "timeout" if isinstance(exc, TimeoutError) else "error"
            return False
        finally:
            record_poll(status, time.perf_counter() - started)

    async def _sleep_with_stop(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
