"""Collections of callbacks that can drop themselves while being invoked."""

from __future__ import annotations

import copy
import threading
import weakref
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional

__all__ = [
    "try_drop_this_callback",
    "retain_this_callback",
    "CallbackStorage",
    "CallbacksRef",
]

_state = threading.local()


def _set_retain(value: bool) -> None:
    _state.retain = value


def _should_retain() -> bool:
    return getattr(_state, "retain", False)


def try_drop_this_callback() -> None:
    """Ask the storage currently invoking this callback to discard it afterwards."""
    _set_retain(False)


def retain_this_callback() -> None:
    """Ask the storage currently invoking this callback to keep it."""
    _set_retain(True)


@dataclass
class _Callback:
    func: Callable[..., Any]
    lock: Optional[threading.Lock] = None

    def invoke(self, args: tuple) -> None:
        if self.lock is None:
            self.func(*args)
        else:
            with self.lock:
                self.func(*args)


@dataclass
class _Incoming:
    """Thread-safe queue of callbacks added through a :class:`CallbacksRef`."""

    items: Deque[_Callback] = field(default_factory=deque)

    def __len__(self) -> int:
        return len(self.items)


class CallbacksRef:
    """A weak handle for adding callbacks to a :class:`CallbackStorage`.

    Once the storage is gone, the add methods hand the callback back.
    """

    def __init__(self, incoming: _Incoming) -> None:
        self._incoming = weakref.ref(incoming)

    def _push(self, entry: _Callback) -> bool:
        incoming = self._incoming()
        if incoming is None:
            return False
        incoming.items.append(entry)
        return True

    def add_fn(self, callback: Callable[..., Any]) -> Optional[Callable[..., Any]]:
        """Add a callback; return it back if the storage no longer exists."""
        return None if self._push(_Callback(callback)) else callback

    def add_fn_mut(self, callback: Callable[..., Any]) -> Optional[Callable[..., Any]]:
        """Add a callback that is never run concurrently with itself."""
        if self._push(_Callback(callback, threading.Lock())):
            return None
        return callback


class CallbackStorage:
    """An ordered set of callbacks invoked with the same arguments.

    A callback may call :func:`try_drop_this_callback` while running to be
    removed from the storage. With ``clone_args`` each callback receives its
    own shallow copy of every argument.
    """

    def __init__(self, clone_args: bool = False) -> None:
        self.clone_args = clone_args
        self._incoming = _Incoming()
        self._storage: List[_Callback] = []
        self._lock = threading.Lock()

    def add_fn(self, callback: Callable[..., Any]) -> None:
        """Add a callback that may run concurrently with itself."""
        with self._lock:
            self._storage.append(_Callback(callback))

    def add_fn_mut(self, callback: Callable[..., Any]) -> None:
        """Add a callback that is serialised by its own lock."""
        with self._lock:
            self._storage.append(_Callback(callback, threading.Lock()))

    def _args_for(self, args: tuple) -> tuple:
        if self.clone_args:
            return tuple(copy.copy(arg) for arg in args)
        return args

    def _run(self, entry: _Callback, args: tuple) -> bool:
        _set_retain(True)
        entry.invoke(self._args_for(args))
        return _should_retain()

    def _run_all_exclusive(self, args: tuple) -> None:
        self._storage = [entry for entry in self._storage if self._run(entry, args)]
        incoming = self._incoming.items
        while incoming:
            try:
                entry = incoming.popleft()
            except IndexError:
                break
            if self._run(entry, args):
                self._storage.append(entry)

    def call(self, *args: Any) -> None:
        """Invoke every callback, dropping those that asked to be dropped."""
        with self._lock:
            self._run_all_exclusive(args)

    def call_immut(self, *args: Any) -> None:
        """Invoke every callback without waiting for exclusive access.

        If the storage is busy, stored callbacks are run but never removed;
        pending callbacks that ask to be dropped are still discarded.
        """
        if self._lock.acquire(blocking=False):
            try:
                self._run_all_exclusive(args)
            finally:
                self._lock.release()
            return

        for entry in list(self._storage):
            entry.invoke(self._args_for(args))
        incoming = self._incoming.items
        for _ in range(len(incoming)):
            try:
                entry = incoming.popleft()
            except IndexError:
                break
            if self._run(entry, args):
                incoming.append(entry)

    def __len__(self) -> int:
        return len(self._storage) + len(self._incoming)

    def is_empty(self) -> bool:
        """Return True if no callbacks are stored or pending."""
        return len(self) == 0

    def get_ref(self) -> CallbacksRef:
        """Return a weak handle through which callbacks can be added."""
        return CallbacksRef(self._incoming)