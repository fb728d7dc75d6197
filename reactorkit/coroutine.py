"""Stackful coroutines with generator-like send/yield semantics.

Each coroutine body runs on its own thread, but control is handed over
explicitly, so exactly one of the caller and the coroutine runs at any
moment. Calling :func:`yield_value` anywhere inside the body, even in
nested calls, suspends the coroutine and hands a value back to the
caller of :func:`send`.
"""

from __future__ import annotations

import functools
import itertools
import threading
from enum import Enum
from typing import Any, Callable

__all__ = [
    "CoroutineError",
    "CoroutineState",
    "Coroutine",
    "create_coroutine",
    "send",
    "yield_value",
    "resume",
    "current_id",
]


class CoroutineError(RuntimeError):
    """Raised when a coroutine is driven in a way it does not allow."""


class CoroutineState(Enum):
    INIT = "init"
    RUNNING = "running"
    FINISH = "finish"


_ids = itertools.count(1)


class Coroutine:
    """A coroutine wrapping ``func(*args, **kwargs)``.

    The value returned by the function becomes the result of the last
    :func:`send` that drives the coroutine to completion.
    """

    def __init__(self, func: Callable[..., Any] | None = None, *args: Any, **kwargs: Any) -> None:
        self._id = next(_ids)
        self._state = CoroutineState.INIT
        self._func = functools.partial(func, *args, **kwargs) if func is not None else None
        self._yielded: Any = None
        self._error: BaseException | None = None
        self._wake = threading.Semaphore(0)
        self._thread: threading.Thread | None = None

    @property
    def id(self) -> int:
        """Process-wide identifier; the main coroutine has id 1."""
        return self._id

    @property
    def state(self) -> CoroutineState:
        return self._state

    def __repr__(self) -> str:
        return f"Coroutine(id={self._id}, state={self._state.name})"

    def _wake_up(self) -> None:
        if self is not _main and self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name=f"coroutine-{self._id}", daemon=True
            )
            self._thread.start()
        else:
            self._wake.release()

    def _send(self, target: Coroutine, value: Any, *, final: bool = False) -> Any:
        global _current
        if target is self:
            raise CoroutineError("A coroutine cannot send to itself")
        if value is not None and target._state is CoroutineState.INIT and target is not _main:
            raise CoroutineError("Can't send non-void value to a just-created coroutine")

        _current = target
        if value is not None:
            self._yielded = value

        target._wake_up()
        if final:
            return None

        self._wake.acquire()
        result, target._yielded = target._yielded, None
        error, target._error = target._error, None
        if error is not None:
            raise error
        return result

    def _run(self) -> None:
        self._state = CoroutineState.RUNNING
        result = None
        try:
            if self._func is not None:
                result = self._func()
        except BaseException as exc:  # handed over to whoever resumed us
            self._error = exc
        self._state = CoroutineState.FINISH
        self._send(_main, result, final=True)


_main = Coroutine()
_current: Coroutine | None = None


def create_coroutine(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Coroutine:
    """Wrap ``func`` with its arguments into a new coroutine."""
    return Coroutine(func, *args, **kwargs)


def send(coroutine: Coroutine, value: Any = None) -> Any:
    """Resume ``coroutine`` with ``value`` and return what it yields next."""
    global _current
    if coroutine._state is CoroutineState.FINISH:
        raise CoroutineError("Send to a finished coroutine.")
    if _current is None:
        _current = _main
    return _current._send(coroutine, value)


def yield_value(value: Any = None) -> Any:
    """Suspend the running coroutine, handing ``value`` to its resumer."""
    if _current is None or _current is _main:
        raise CoroutineError("yield outside of a coroutine")
    return _current._send(_main, value)


def resume(coroutine: Coroutine) -> Any:
    """Resume ``coroutine`` without sending a value."""
    return send(coroutine)


def current_id() -> int:
    """Identifier of the coroutine that is running now."""
    return (_current or _main).id