"""A queue that receives values from callbacks and is awaited asynchronously."""

from __future__ import annotations

import asyncio
import threading
import weakref
from collections import deque
from typing import Callable, Deque, Generic, Optional, Tuple, TypeVar

from roverkit.callbacks import try_drop_this_callback

__all__ = ["Subscriber"]

T = TypeVar("T")


class _Notify:
    """Wakes one waiting task, or remembers a single wake-up for the next one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiters: Deque[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = deque()
        self._permit = False

    async def notified(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._permit:
                self._permit = False
                return
            future = loop.create_future()
            entry = (loop, future)
            self._waiters.append(entry)
        try:
            await future
        finally:
            with self._lock:
                try:
                    self._waiters.remove(entry)
                except ValueError:
                    pass

    def notify_one(self) -> None:
        with self._lock:
            while self._waiters:
                loop, future = self._waiters.popleft()
                if future.done():
                    continue
                try:
                    loop.call_soon_threadsafe(_wake, future)
                except RuntimeError:
                    continue
                return
            self._permit = True


def _wake(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class _Inner(Generic[T]):
    def __init__(self, max_size: Optional[int]) -> None:
        self.max_size = max_size
        self.items: Deque[T] = deque()
        self.lock = threading.Lock()
        self.notify = _Notify()

    def push(self, value: T) -> bool:
        """Append unless full; return whether the value was stored."""
        with self.lock:
            if self.max_size is not None and len(self.items) >= self.max_size:
                return False
            self.items.append(value)
            return True

    def force_push(self, value: T) -> bool:
        """Append, dropping the oldest value if full; return True if one was dropped."""
        with self.lock:
            dropped = False
            if self.max_size is not None and len(self.items) >= self.max_size:
                self.items.popleft()
                dropped = True
            self.items.append(value)
            return dropped

    def pop(self) -> Optional[T]:
        with self.lock:
            return self.items.popleft() if self.items else None


class Subscriber(Generic[T]):
    """Collects values delivered by callbacks it creates.

    The subscriber counts as closed once every callback it created has been
    discarded.
    """

    def __init__(self, max_size: Optional[int]) -> None:
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._inner: _Inner[T] = _Inner(max_size)

    @classmethod
    def unbounded(cls) -> "Subscriber[T]":
        """Create a subscriber with no maximum size."""
        return cls(None)

    def try_recv(self) -> Optional[T]:
        """Return the oldest value, or None if there is none."""
        return self._inner.pop()

    def is_closed(self) -> bool:
        """Return True if every callback created by this subscriber is gone."""
        return weakref.getweakrefcount(self._inner) == 0

    async def recv(self) -> Optional[T]:
        """Wait for a value; return None if empty and closed."""
        while True:
            value = self._inner.pop()
            if value is not None:
                return value
            if self.is_closed():
                return None
            await self._inner.notify.notified()

    async def recv_or_never(self) -> T:
        """Wait for a value, or forever if empty and closed."""
        value = await self.recv()
        if value is not None:
            return value
        await asyncio.get_running_loop().create_future()
        raise AssertionError("unreachable")

    def put(self, value: T) -> None:
        """Add a value, dropping the oldest one if full."""
        if not self._inner.force_push(value):
            self._inner.notify.notify_one()

    def put_conservative(self, value: T) -> None:
        """Add a value unless full, in which case it is dropped."""
        if self._inner.push(value):
            self._inner.notify.notify_one()

    def create_conservative_callback(self) -> Callable[[T], None]:
        """Return a callback that adds values, dropping new ones when full."""
        ref = weakref.ref(self._inner)

        def callback(value: T) -> None:
            inner = ref()
            if inner is None:
                try_drop_this_callback()
                return
            if inner.push(value):
                inner.notify.notify_one()

        return callback

    def create_callback(self) -> Callable[[T], None]:
        """Return a callback that adds values, dropping the oldest when full."""
        ref = weakref.ref(self._inner)

        def callback(value: T) -> None:
            inner = ref()
            if inner is None:
                try_drop_this_callback()
                return
            if not inner.force_push(value):
                inner.notify.notify_one()

        return callback