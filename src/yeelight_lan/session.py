"""Persistent per-device control socket with request/response correlation."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .codec import (
    Command,
    Notification,
    Response,
    confirmed_fields,
    decode_message,
    encode_request,
    get_prop_result_to_props,
    props_to_state_fields,
)
from .config import Config
from .effects import get_prop
from .errors import (
    CommandTimeoutError,
    DeviceConnectionError,
    ProtocolError,
    SessionClosedError,
)
from .events import EventStream
from .health import BackoffPolicy
from .logging import get_logger
from .metrics import (
    observe_command_latency,
    record_command_result,
    record_session_reconnect,
    set_session_state,
)
from .models import DeviceDescriptor, StateUpdate

Connector = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class _Pending:
    command: Command
    future: "asyncio.Future[List[Any]]"
    sent_at: Optional[float] = None


@dataclass
class _Outbound:
    command: Command
    future: Optional["asyncio.Future[List[Any]]"] = field(default=None)


async def _open_connection(host: str, port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(host, port)


class DeviceSession:
    """Owns the one TCP connection to a device.

    Writes go through a single queue drained by one writer task, so commands
    reach the socket in the order :meth:`send` was called. One reader task
    decodes every incoming line: responses resolve the matching entry in the
    pending table by id, anything else is a ``props`` notification and is
    published on :attr:`updates`.

    :attr:`updates` carries :class:`StateUpdate` items from notifications,
    acknowledged setter commands, ``get_prop`` refreshes and connection
    state changes (``online`` true/false).
    """

    def __init__(
        self,
        descriptor: DeviceDescriptor,
        config: Config,
        *,
        connector: Optional[Connector] = None,
        refresh_on_connect: bool = False,
    ) -> None:
        self.device_id = descriptor.id
        self.host = descriptor.ip
        self.port = descriptor.port
        self.config = config
        self.state = SessionState.DISCONNECTED
        self.updates: EventStream[StateUpdate] = EventStream(
            f"session:{descriptor.id}", maxsize=config.event_queue_size
        )
        self.logger = get_logger("yeelight.session")
        self._connector = connector or _open_connection
        self._refresh_on_connect = refresh_on_connect
        self._pending: Dict[int, _Pending] = {}
        self._queue: asyncio.Queue[_Outbound] = asyncio.Queue(maxsize=config.session_queue_depth)
        self._ready = asyncio.Event()
        self._open_lock = asyncio.Lock()
        self._writer: Optional[asyncio.StreamWriter] = None
        self._tasks: List[asyncio.Task[None]] = []
        self._connect_task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._next_id = 0
        self._backoff = BackoffPolicy(
            base=config.session_reconnect_base,
            factor=config.session_reconnect_factor,
            maximum=config.session_reconnect_max,
            jitter=config.session_reconnect_jitter,
        )
        self._log_extra = {"device_id": self.device_id}
        set_session_state(self.device_id, self.state.value)

    # Lifecycle -------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def pending_ids(self) -> Tuple[int, ...]:
        return tuple(self._pending)

    def start(self) -> None:
        """Begin connecting in the background; failures are retried with backoff."""

        if self.state is SessionState.DISCONNECTED:
            self._schedule_connect(immediate=True)

    async def connect(self) -> None:
        """Connect now, raising :class:`DeviceConnectionError` on failure."""

        if self.state is SessionState.CLOSED:
            raise SessionClosedError(self.device_id, "session is closed")
        await self._open()

    async def close(self) -> None:
        """Close the socket and fail every pending request with :class:`SessionClosedError`."""

        if self.state is SessionState.CLOSED:
            return
        was_ready = self.state is SessionState.READY
        self._set_state(SessionState.CLOSED)
        # Wake anyone waiting for a connection; they will see CLOSED.
        self._ready.set()
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        if self._connect_task and self._connect_task is not asyncio.current_task():
            tasks.append(self._connect_task)
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._connect_task = None
        self._fail_outstanding(SessionClosedError(self.device_id, "session closed"))
        await self._close_writer()
        if was_ready:
            self._publish({"online": False}, "connection")
        self.logger.info("Device session closed", extra=self._log_extra)

    def update_target(self, host: str, port: int) -> None:
        """Point the session at a new address; an open connection is dropped and re-established."""

        if (host, port) == (self.host, self.port):
            return
        self.logger.info(
            "Device address changed",
            extra={**self._log_extra, "ip": host, "port": port, "previous_ip": self.host},
        )
        self.host, self.port = host, port
        if self.state is SessionState.READY:
            self._connection_lost(DeviceConnectionError(self.device_id, "address changed"))

    # Requests --------------------------------------------------------------

    async def send(self, command: Command, timeout: Optional[float] = None) -> List[Any]:
        """Send ``command`` and wait for its result list.

        Raises :class:`ProtocolError` when the device answers with an error,
        :class:`CommandTimeoutError` when no answer arrives in time, and
        :class:`DeviceConnectionError` when the connection is unavailable or
        drops while the request is in flight.
        """

        loop = asyncio.get_running_loop()
        timeout = self.config.command_timeout if timeout is None else timeout
        deadline = loop.time() + timeout
        await self._wait_ready(timeout)

        command = command.with_id(self._allocate_id())
        assert command.id is not None
        future: asyncio.Future[List[Any]] = loop.create_future()
        self._pending[command.id] = _Pending(command, future)
        try:
            self._enqueue(_Outbound(command, future))
            result = await asyncio.wait_for(future, timeout=max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            record_command_result(command.method, "timeout")
            self.logger.warning(
                "Command timed out",
                extra={**self._log_extra, "id": command.id, "method": command.method},
            )
            raise CommandTimeoutError(
                f"{self.device_id}: no response to {command.method} (id {command.id}) within {timeout}s"
            ) from None
        except asyncio.CancelledError:
            record_command_result(command.method, "cancelled")
            raise
        finally:
            self._pending.pop(command.id, None)
        return result

    async def send_no_reply(self, command: Command) -> int:
        """Queue ``command`` without waiting for (or tracking) the response; returns its id."""

        await self._wait_ready(self.config.command_timeout)
        command = command.with_id(self._allocate_id())
        assert command.id is not None
        self._enqueue(_Outbound(command))
        record_command_result(command.method, "sent")
        return command.id

    async def refresh_state(self) -> Dict[str, Any]:
        """Read the device's properties with ``get_prop`` and publish them."""

        result = await self.send(get_prop())
        fields = props_to_state_fields(get_prop_result_to_props(result))
        if fields:
            self._publish(fields, "poll")
        return fields

    # Internals -------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        self.logger.debug(
            "Session state transition",
            extra={**self._log_extra, "from": self.state.value, "to": state.value},
        )
        self.state = state
        set_session_state(self.device_id, state.value)

    def _publish(self, fields: Mapping[str, Any], source: str) -> None:
        self.updates.publish(StateUpdate(self.device_id, dict(fields), source))

    def _allocate_id(self) -> int:
        for _ in range(len(self._pending) + 1):
            self._next_id = self._next_id + 1 if self._next_id < self.config.command_id_max else 1
            if self._next_id not in self._pending:
                return self._next_id
        raise ProtocolError(f"{self.device_id}: no free correlation id")

    def _enqueue(self, outbound: _Outbound) -> None:
        try:
            self._queue.put_nowait(outbound)
        except asyncio.QueueFull:
            raise DeviceConnectionError(self.device_id, "send queue is full") from None

    async def _wait_ready(self, timeout: float) -> None:
        if self.state is SessionState.READY:
            return
        if self.state is SessionState.CLOSED:
            raise SessionClosedError(self.device_id, "session is closed")
        if self._connect_task is None or self._connect_task.done():
            self._schedule_connect(immediate=True)
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise DeviceConnectionError(self.device_id, "not connected") from None
        if self.state is SessionState.CLOSED:
            raise SessionClosedError(self.device_id, "session is closed")

    def _schedule_connect(self, immediate: bool) -> None:
        if self.state is SessionState.CLOSED:
            return
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._connect_task = asyncio.get_running_loop().create_task(
            self._connect_loop(immediate)
        )

    async def _connect_loop(self, immediate: bool) -> None:
        failures = 0 if immediate else 1
        attempts = self.config.session_reconnect_attempts
        while self.state is not SessionState.CLOSED:
            if failures:
                if attempts and failures > attempts:
                    record_session_reconnect("exhausted")
                    self.logger.error(
                        "Giving up reconnecting to device",
                        extra={**self._log_extra, "attempts": attempts},
                    )
                    return
                delay = self._backoff.delay(failures)
                record_session_reconnect("scheduled")
                self.logger.debug(
                    "Reconnect scheduled",
                    extra={**self._log_extra, "delay_seconds": round(delay, 3)},
                )
                await asyncio.sleep(delay)
            try:
                await self._open()
            except DeviceConnectionError as exc:
                failures += 1
                record_session_reconnect("failure")
                self.logger.warning(
                    "Connection attempt failed",
                    extra={**self._log_extra, "error": str(exc), "failures": failures},
                )
                continue
            if failures:
                record_session_reconnect("success")
            return

    async def _open(self) -> None:
        async with self._open_lock:
            if self.state in (SessionState.READY, SessionState.CLOSED):
                return
            self._set_state(SessionState.CONNECTING)
            try:
                reader, writer = await asyncio.wait_for(
                    self._connector(self.host, self.port),
                    timeout=self.config.session_connect_timeout,
                )
            except (OSError, asyncio.TimeoutError) as exc:
                if self.state is SessionState.CONNECTING:
                    self._set_state(SessionState.DISCONNECTED)
                self._publish({"online": False}, "connection")
                raise DeviceConnectionError(
                    self.device_id, f"cannot connect to {self.host}:{self.port}: {exc!r}"
                ) from exc
            if self.state is SessionState.CLOSED:
                writer.close()
                return
            self._writer = writer
            loop = asyncio.get_running_loop()
            self._tasks = [
                loop.create_task(self._read_loop(reader)),
                loop.create_task(self._write_loop(writer)),
            ]
            self._set_state(SessionState.READY)
            self._ready.set()
        self.logger.info(
            "Device session ready",
            extra={**self._log_extra, "ip": self.host, "port": self.port},
        )
        self._publish({"online": True}, "connection")
        if self._refresh_on_connect:
            task = loop.create_task(self._initial_refresh())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _initial_refresh(self) -> None:
        try:
            await self.refresh_state()
        except (ProtocolError, DeviceConnectionError) as exc:
            self.logger.debug(
                "Initial state refresh failed", extra={**self._log_extra, "error": str(exc)}
            )

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        error: Optional[BaseException] = None
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except (OSError, ValueError, asyncio.IncompleteReadError) as exc:
            error = exc
        self._connection_lost(
            DeviceConnectionError(self.device_id, f"connection lost: {error!r}" if error else "connection closed by device")
        )

    async def _write_loop(self, writer: asyncio.StreamWriter) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                outbound = await self._queue.get()
                if outbound.future is not None and outbound.future.done():
                    # The caller gave up before we got to it.
                    continue
                command_id = outbound.command.id
                pending = self._pending.get(command_id) if command_id is not None else None
                if pending is not None:
                    pending.sent_at = loop.time()
                writer.write(encode_request(outbound.command))
                await writer.drain()
        except asyncio.CancelledError:
            raise
        except OSError as exc:
            self._connection_lost(DeviceConnectionError(self.device_id, f"write failed: {exc!r}"))

    def _handle_line(self, line: bytes) -> None:
        try:
            message = decode_message(line)
        except ProtocolError as exc:
            self.logger.warning(
                "Discarding undecodable message", extra={**self._log_extra, "error": str(exc)}
            )
            return
        if isinstance(message, Notification):
            fields = props_to_state_fields(message.props)
            self.logger.debug(
                "Received notification", extra={**self._log_extra, "props": dict(message.props)}
            )
            if fields:
                self._publish(fields, "notification")
            return
        self._handle_response(message)

    def _handle_response(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None)
        if pending is None:
            self.logger.debug(
                "Response for unknown or expired request", extra={**self._log_extra, "id": response.id}
            )
            return
        if pending.future.done():
            return
        method = pending.command.method
        if pending.sent_at is not None:
            observe_command_latency(method, asyncio.get_running_loop().time() - pending.sent_at)
        if not response.ok:
            record_command_result(method, "error")
            pending.future.set_exception(
                ProtocolError(
                    f"{self.device_id}: {method} rejected: {response.error_message}",
                    response.error_code,
                )
            )
            return
        record_command_result(method, "ok")
        pending.future.set_result(list(response.result or []))
        fields = confirmed_fields(pending.command)
        if fields:
            self._publish(fields, "ack")

    def _connection_lost(self, error: DeviceConnectionError) -> None:
        if self.state is not SessionState.READY:
            return
        self.logger.warning(
            "Device connection lost", extra={**self._log_extra, "error": str(error)}
        )
        self._set_state(SessionState.DISCONNECTED)
        self._ready.clear()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        self._fail_outstanding(error)
        self._publish({"online": False}, "connection")
        self._schedule_connect(immediate=False)

    def _fail_outstanding(self, error: DeviceConnectionError) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                record_command_result(entry.command.method, "connection")
                entry.future.set_exception(error)
        while True:
            try:
                outbound = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if outbound.future is not None and not outbound.future.done():
                outbound.future.set_exception(error)

    async def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(writer.wait_closed(), timeout=self.config.session_connect_timeout)
