"""A set of event loops, each running on its own thread."""

from __future__ import annotations

import itertools
import threading
from enum import Enum

from .event_loop import EventLoop

__all__ = ["EventLoopGroup"]

_MAX_LOOPS = 1024


class _State(Enum):
    NONE = "none"
    STARTED = "started"
    STOPPED = "stopped"


class EventLoopGroup:
    """Starts ``num_loops`` threads, each creating and running an :class:`EventLoop`."""

    def __init__(self, num_loops: int = 1) -> None:
        self._num_loops = 0
        self.num_loops = num_loops
        self._state = _State.NONE
        self._cond = threading.Condition()
        self._loops: list[EventLoop] = []
        self._errors: list[BaseException] = []
        self._threads: list[threading.Thread] = []
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"EventLoopGroup(loops={self._num_loops}, state={self._state.name})"

    def __len__(self) -> int:
        return self._num_loops

    @property
    def num_loops(self) -> int:
        return self._num_loops

    @num_loops.setter
    def num_loops(self, value: int) -> None:
        if not 0 <= value <= _MAX_LOOPS:
            raise ValueError(f"number of loops must be between 0 and {_MAX_LOOPS}")
        self._num_loops = value

    def stop(self) -> None:
        self._state = _State.STOPPED

    def is_stopped(self) -> bool:
        return self._state is _State.STOPPED

    def start(self) -> None:
        """Start the loop threads and wait until every loop exists."""
        if self._state is not _State.NONE:
            raise RuntimeError("event loop group already started")

        for index in range(self._num_loops):
            thread = threading.Thread(target=self._work, name=f"event-loop-{index}", daemon=True)
            self._threads.append(thread)
            thread.start()

        with self._cond:
            self._cond.wait_for(lambda: len(self._loops) + len(self._errors) == self._num_loops)
            if self._errors:
                self._state = _State.STOPPED
                raise RuntimeError("failed to create an event loop") from self._errors[0]
        self._state = _State.STARTED

    def _work(self) -> None:
        try:
            loop = EventLoop(self)
        except Exception as exc:
            with self._cond:
                self._errors.append(exc)
                self._cond.notify_all()
            return
        with self._cond:
            self._loops.append(loop)
            self._cond.notify_all()
        loop.run()

    def wait(self) -> None:
        """Join the loop threads and release their loops."""
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        for loop in self._loops:
            loop.close()
        self._loops.clear()

    def next_loop(self) -> EventLoop | None:
        """The next loop in round-robin order, or None if the group is not running."""
        if self._state is not _State.STARTED or not self._loops:
            return None
        with self._counter_lock:
            index = next(self._counter)
        return self._loops[index % len(self._loops)]