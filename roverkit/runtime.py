"""A process-wide background event loop that can be ended and kept alive by guards.

The runtime is created lazily by :func:`get_runtime` (or explicitly through
:meth:`RuntimeConfig.build`) and runs on its own thread. Ending it waits for
every :class:`RuntimeDropGuard` that was attached to it to be released.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
import traceback
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Iterator, List, Optional, Tuple, TypeVar

__all__ = [
    "RuntimeConfig",
    "get_runtime",
    "end_runtime",
    "end_runtime_and_wait",
    "has_runtime_ended",
    "is_runtime_ending",
    "block_on",
    "RuntimeDropGuard",
    "attach_drop_guard",
    "detach_drop_guard",
    "duration_warning",
    "Timing",
]

_log = logging.getLogger(__name__)

R = TypeVar("R")


def _wake(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class _NotifyFlag:
    """A flag that is set once and can be awaited from any event loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._set = False
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    def was_notified(self) -> bool:
        with self._lock:
            return self._set

    def notify(self) -> None:
        with self._lock:
            self._set = True
            waiters, self._waiters = self._waiters, []
        for loop, future in waiters:
            try:
                loop.call_soon_threadsafe(_wake, future)
            except RuntimeError:
                pass

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._set:
                return
            future = loop.create_future()
            self._waiters.append((loop, future))
        await future


@dataclass(frozen=True)
class RuntimeConfig:
    """Settings used when the runtime is created.

    ``num_threads`` sizes the pool used for blocking work; the two delays are
    in seconds.
    """

    num_threads: Optional[int] = None
    shutdown_delayed_warning: float = 5.0
    thread_delayed_warning: float = 5.0

    def __post_init__(self) -> None:
        if self.num_threads is not None and self.num_threads < 1:
            raise ValueError("num_threads must be at least 1")

    def build(self) -> None:
        """Create the runtime with this configuration unless one already exists."""
        _with_runtime(lambda handle: None, lambda: self)


class _GuardInner:
    def __init__(self) -> None:
        self.backtrace = "".join(traceback.format_stack()[:-2])
        self.notify = _NotifyFlag()
        self.attached = False


@dataclass(eq=False)
class _RuntimeHandle:
    loop: asyncio.AbstractEventLoop
    index: int
    end_flag: _NotifyFlag = field(default_factory=_NotifyFlag)
    guards: Deque[_GuardInner] = field(default_factory=deque)
    collected: List[_GuardInner] = field(default_factory=list)
    ended: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


_lock = threading.Lock()
_handle: Optional[_RuntimeHandle] = None
_indices = itertools.count()


def _with_runtime(
    f: Callable[[_RuntimeHandle], R], config: Callable[[], RuntimeConfig]
) -> R:
    global _handle
    with _lock:
        handle = _handle
        if handle is None:
            handle = _start_runtime(config())
            _handle = handle
    return f(handle)


def _start_runtime(config: RuntimeConfig) -> _RuntimeHandle:
    loop = asyncio.new_event_loop()
    if config.num_threads is not None:
        loop.set_default_executor(ThreadPoolExecutor(max_workers=config.num_threads))
    handle = _RuntimeHandle(loop=loop, index=next(_indices))
    thread = threading.Thread(
        target=_run_runtime,
        args=(handle, config),
        name=f"runtime-{handle.index}",
        daemon=True,
    )
    handle.thread = thread
    thread.start()
    return handle


async def _await_end(handle: _RuntimeHandle, config: RuntimeConfig) -> None:
    await handle.end_flag.wait()
    guards = handle.collected
    while handle.guards:
        try:
            guards.append(handle.guards.popleft())
        except IndexError:
            break

    async def all_released() -> None:
        for guard in guards:
            await guard.notify.wait()

    task = asyncio.ensure_future(all_released())
    done, _ = await asyncio.wait({task}, timeout=config.thread_delayed_warning)
    if not done:
        backtraces = "\n\n".join(guard.backtrace for guard in guards if not guard.notify.was_notified())
        _log.warning(
            "The following guards have not dropped after %.1f seconds\n\n%s",
            config.thread_delayed_warning,
            backtraces,
        )
        await task


def _shutdown_watchdog(ended: threading.Event, delay: float) -> None:
    if not ended.wait(delay):
        _log.warning("Runtime has not ended after %.1f seconds", delay)


def _close_loop(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    for task in pending:
        task.cancel()
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
    loop.run_until_complete(loop.shutdown_asyncgens())
    loop.run_until_complete(loop.shutdown_default_executor())
    loop.close()


def _run_runtime(handle: _RuntimeHandle, config: RuntimeConfig) -> None:
    global _handle
    loop = handle.loop
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(_await_end(handle, config))
    finally:
        threading.Thread(
            target=_shutdown_watchdog,
            args=(handle.ended, config.shutdown_delayed_warning),
            daemon=True,
        ).start()
        try:
            _close_loop(loop)
        finally:
            with _lock:
                if _handle is handle:
                    _handle = None
                for guard in itertools.chain(handle.collected, handle.guards):
                    guard.attached = False
            handle.ended.set()


def get_runtime() -> asyncio.AbstractEventLoop:
    """Return the runtime's event loop, creating it with defaults if needed."""
    return _with_runtime(lambda handle: handle.loop, RuntimeConfig)


def end_runtime() -> None:
    """Ask the runtime to end once every attached guard is released."""
    with _lock:
        handle = _handle
    if handle is not None:
        handle.end_flag.notify()


def end_runtime_and_wait() -> None:
    """Ask the runtime to end and block until it has."""
    with _lock:
        handle = _handle
    if handle is None:
        return
    handle.end_flag.notify()
    handle.ended.wait()


def has_runtime_ended() -> bool:
    """Return True iff there is no runtime."""
    with _lock:
        return _handle is None


def is_runtime_ending() -> bool:
    """Return True iff there is a runtime and it has been asked to end."""
    with _lock:
        handle = _handle
    return handle is not None and handle.end_flag.was_notified()


def block_on(coro: Awaitable[R]) -> R:
    """Run ``coro`` on the runtime and wait for its result.

    Raises RuntimeError when called from the runtime's own loop.
    """
    loop = get_runtime()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        close = getattr(coro, "close", None)
        if close is not None:
            close()
        raise RuntimeError("cannot block on the runtime from within the runtime")
    return asyncio.run_coroutine_threadsafe(coro, loop).result()


class RuntimeDropGuard:
    """Keeps the runtime from ending until it is released.

    It only takes effect if created while a runtime exists; use
    :func:`get_runtime` first to make sure one does.
    """

    def __init__(self) -> None:
        inner = _GuardInner()
        self._inner = inner
        with _lock:
            if _handle is not None:
                _handle.guards.append(inner)
                inner.attached = True

    def is_attached(self) -> bool:
        """Return True iff this guard is holding a runtime open."""
        return self._inner.attached

    def release(self) -> None:
        """Let the runtime end as far as this guard is concerned."""
        self._inner.notify.notify()

    def __enter__(self) -> "RuntimeDropGuard":
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()

    def __del__(self) -> None:
        inner = getattr(self, "_inner", None)
        if inner is not None:
            inner.notify.notify()


_local = threading.local()


def attach_drop_guard() -> None:
    """Store a new guard for the current thread, releasing any previous one."""
    old = getattr(_local, "guard", None)
    _local.guard = RuntimeDropGuard()
    if old is not None:
        old.release()


def detach_drop_guard() -> Optional[RuntimeDropGuard]:
    """Remove and return the current thread's guard, if any.

    Releasing the returned guard explicitly is the reliable way to let the
    runtime end.
    """
    guard = getattr(_local, "guard", None)
    _local.guard = None
    return guard


@dataclass
class Timing:
    """The time a :func:`duration_warning` block took, in seconds."""

    elapsed: float = 0.0


@contextmanager
def duration_warning(label: str, threshold: float = 1.0) -> Iterator[Timing]:
    """Log a warning if the block takes longer than ``threshold`` seconds."""
    timing = Timing()
    start = time.perf_counter()
    yield timing
    timing.elapsed = time.perf_counter() - start
    if timing.elapsed > threshold:
        _log.warning("%s took %.1f seconds", label, timing.elapsed)