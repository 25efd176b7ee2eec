"""Fan-out event streams used for device, state, and discovery updates."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Generic, List, Optional, Set, TypeVar

from .logging import get_logger

T = TypeVar("T")


class Subscription(Generic[T]):
    """A single consumer's view of an :class:`EventStream`.

    Iterate with ``async for`` or call :meth:`get`. Each subscription owns a
    bounded queue; when a slow consumer falls behind, the oldest item is
    dropped so publishers never block.
    """

    def __init__(self, stream: "EventStream[T]", maxsize: int) -> None:
        self._stream = stream
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _push(self, item: T) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def get(self, timeout: Optional[float] = None) -> T:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def get_nowait(self) -> T:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.closed = True
        self._stream._discard(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class EventStream(Generic[T]):
    """Publish items to every subscriber and listener.

    Publishing is synchronous and never blocks, so it is safe to call from
    protocol callbacks such as ``datagram_received``. Async listeners are
    scheduled as tasks on the running loop.
    """

    def __init__(self, name: str, maxsize: int = 1000) -> None:
        self.name = name
        self._maxsize = maxsize
        self._subscriptions: Set[Subscription[T]] = set()
        self._listeners: List[Callable[[T], Any]] = []
        self._tasks: Set[asyncio.Task[Any]] = set()
        self.logger = get_logger("yeelight.events")

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self, self._maxsize)
        self._subscriptions.add(subscription)
        return subscription

    def add_listener(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""

        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def publish(self, item: T) -> None:
        for subscription in list(self._subscriptions):
            subscription._push(item)
        for callback in list(self._listeners):
            try:
                if inspect.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(item))
                    self._tasks.add(task)
                    task.add_done_callback(self._listener_done)
                else:
                    callback(item)
            except Exception:
                # A broken listener must not prevent delivery to the others.
                self.logger.exception(
                    "Event listener failed", extra={"stream": self.name}
                )

    def _listener_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                "Event listener failed",
                extra={"stream": self.name},
                exc_info=(type(error), error, error.__traceback__),
            )

    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def _discard(self, subscription: Subscription[T]) -> None:
        self._subscriptions.discard(subscription)
