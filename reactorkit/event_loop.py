"""The event loop: one per thread, polling channels and running timers and tasks."""

from __future__ import annotations

import heapq
import itertools
import logging
import math
import threading
import time
import weakref
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .acceptor import Acceptor
from .connection import Connection
from .connector import Connector
from .datagram import DatagramSocket
from .pipe_channel import PipeChannel
from .poller import Channel, EventType, Poller
from .sockets import SocketAddr
from .sockets import max_open_fd as _query_max_open_fd
from .sockets import set_max_open_fd as _raise_max_open_fd

__all__ = ["EventLoop"]

logger = logging.getLogger(__name__)

_DEFAULT_POLL_TIME = 0.010
_MIN_POLL_TIME = 0.001
_MAX_CHANNEL_ID = 0xFFFFFFFF

_thread_state = threading.local()


class _Group(Protocol):
    def is_stopped(self) -> bool: ...


@dataclass
class _Timer:
    period: float
    remaining: int  # negative means forever
    func: Callable[..., Any]
    args: tuple[Any, ...]


class _TimerQueue:
    """Timers keyed by id, ordered by their monotonic deadline."""

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, int]] = []
        self._timers: dict[int, _Timer] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count()

    def add(self, when: float, period: float, count: int,
            func: Callable[..., Any], args: tuple[Any, ...]) -> int:
        if count == 0:
            raise ValueError("a timer must fire at least once")
        timer_id = next(self._ids)
        self._timers[timer_id] = _Timer(period, count, func, args)
        heapq.heappush(self._heap, (when, next(self._seq), timer_id))
        return timer_id

    def cancel(self, timer_id: int) -> bool:
        return self._timers.pop(timer_id, None) is not None

    def nearest(self) -> float:
        """Seconds until the next timer fires, or infinity if there is none."""
        while self._heap and self._heap[0][2] not in self._timers:
            heapq.heappop(self._heap)
        if not self._heap:
            return math.inf
        return max(0.0, self._heap[0][0] - time.monotonic())

    def update(self) -> None:
        """Run every timer that is due now."""
        now = time.monotonic()
        due = []
        while self._heap and self._heap[0][0] <= now:
            due.append(heapq.heappop(self._heap))

        for when, _, timer_id in due:
            timer = self._timers.get(timer_id)
            if timer is None:
                continue
            if timer.remaining > 0:
                timer.remaining -= 1
            if timer.remaining == 0:
                del self._timers[timer_id]
            else:
                heapq.heappush(self._heap, (when + timer.period, next(self._seq), timer_id))
            timer.func(*timer.args)


def _run_into(future: Future, func: Callable[..., Any], args: tuple[Any, ...]) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        result = func(*args)
    except Exception as exc:
        future.set_exception(exc)
    else:
        future.set_result(result)


def _as_addr(addr: SocketAddr | str | tuple[str, int]) -> SocketAddr:
    if isinstance(addr, SocketAddr):
        return addr
    if isinstance(addr, str):
        return SocketAddr.parse(addr)
    ip, port = addr
    return SocketAddr(ip, port)


def _next_channel_id() -> int:
    value = getattr(_thread_state, "channel_id", 0) + 1
    if value > _MAX_CHANNEL_ID:
        value = 1
    _thread_state.channel_id = value
    return value


class EventLoop:
    """Polls registered channels, runs timers and tasks handed over by other threads.

    A thread has at most one live event loop: the one constructed in it.
    It runs until ``group.is_stopped()`` becomes true. Timer deadlines
    are :func:`time.monotonic` seconds, delays and periods are seconds.

    ``load_balancer`` may be set to a callable returning the loop that
    should own newly accepted or connected connections.
    """

    _ids = itertools.count(0)
    _max_open_fd: int = _query_max_open_fd()

    def __init__(self, group: _Group) -> None:
        ref = getattr(_thread_state, "loop", None)
        if ref is not None and ref() is not None:
            raise RuntimeError("There must be only one EventLoop per thread")
        _thread_state.loop = weakref.ref(self)

        self._group = group
        self._poller: Poller | None = Poller()
        self._notifier = PipeChannel()
        self._timers = _TimerQueue()
        self._channels: dict[int, Channel] = {}
        self._functor_lock = threading.Lock()
        self._functors: list[Callable[[], None]] = []
        self._id = next(EventLoop._ids)
        self.load_balancer: Callable[[], EventLoop | None] | None = None

    def __repr__(self) -> str:
        return f"EventLoop(id={self._id}, channels={len(self._channels)})"

    def __enter__(self) -> EventLoop:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._channels)

    @property
    def id(self) -> int:
        return self._id

    @staticmethod
    def current() -> EventLoop | None:
        """The event loop of the calling thread, if it has one."""
        ref = getattr(_thread_state, "loop", None)
        return ref() if ref is not None else None

    @staticmethod
    def set_max_open_fd(limit: int) -> None:
        """Raise the open-file limit and register channels up to it."""
        if _raise_max_open_fd(limit):
            EventLoop._max_open_fd = limit

    def in_this_loop(self) -> bool:
        return EventLoop.current() is self

    def next_loop(self) -> EventLoop:
        """The loop a new connection should go to."""
        if self.load_balancer is not None:
            loop = self.load_balancer()
            if loop is not None:
                return loop
        return self

    # listeners and connectors

    def listen(self, addr: SocketAddr | str | tuple[str, int],
               on_new_connection: Callable[[Connection], None] | None) -> Acceptor | None:
        """Listen for TCP connections; the acceptor, or None on failure."""
        acceptor = Acceptor(self, on_new_connection, self.next_loop)
        if not acceptor.bind(_as_addr(addr)):
            acceptor.close()
            return None
        return acceptor

    def listen_udp(self, addr: SocketAddr | str | tuple[str, int],
                   on_message: Callable[[DatagramSocket, bytes], None] | None,
                   on_create: Callable[[DatagramSocket], None] | None) -> DatagramSocket | None:
        """Bind a UDP server socket; the socket, or None on failure."""
        sock = DatagramSocket(self, on_message, on_create)
        if not sock.bind(_as_addr(addr)):
            sock.close()
            return None
        return sock

    def create_client_udp(self, on_message: Callable[[DatagramSocket, bytes], None] | None,
                          on_create: Callable[[DatagramSocket], None] | None) -> DatagramSocket | None:
        """Create an unbound UDP client socket; the socket, or None on failure."""
        sock = DatagramSocket(self, on_message, on_create)
        if not sock.bind(None):
            sock.close()
            return None
        return sock

    def connect(self, dst: SocketAddr | str | tuple[str, int],
                on_new_connection: Callable[[Connection], None] | None,
                on_failure: Callable[[Any, SocketAddr], None] | None,
                timeout: float | None = None,
                dst_loop: EventLoop | None = None) -> Connector | None:
        """Start a TCP connection; the connector, or None if it failed at once."""
        connector = Connector(self, on_new_connection, on_failure, self.next_loop)
        if not connector.connect(_as_addr(dst), timeout, dst_loop):
            return None
        return connector

    # timers

    def _check_timer_thread(self) -> None:
        if not self.in_this_loop():
            raise RuntimeError("timers may only be scheduled from the loop's own thread")

    def schedule_at_with_repeat(self, when: float, period: float, count: int,
                                func: Callable[..., Any], *args: Any) -> int:
        """Fire at ``when`` and then every ``period``, ``count`` times (negative: forever)."""
        self._check_timer_thread()
        return self._timers.add(when, period, count, func, args)

    def schedule_after_with_repeat(self, period: float, count: int,
                                   func: Callable[..., Any], *args: Any) -> int:
        """Fire every ``period`` seconds, ``count`` times (negative: forever)."""
        self._check_timer_thread()
        return self._timers.add(time.monotonic() + period, period, count, func, args)

    def schedule_at(self, when: float, func: Callable[..., Any], *args: Any) -> int:
        return self.schedule_at_with_repeat(when, 0.0, 1, func, *args)

    def schedule_after(self, delay: float, func: Callable[..., Any], *args: Any) -> int:
        return self.schedule_after_with_repeat(delay, 1, func, *args)

    def cancel(self, timer_id: int) -> bool:
        """Cancel a timer; False if it is unknown or already finished."""
        return self._timers.cancel(timer_id)

    def schedule_later(self, delay: float, func: Callable[[], Any]) -> None:
        """Run ``func`` once after ``delay`` seconds; callable from any thread."""
        if self.in_this_loop():
            self.schedule_after_with_repeat(delay, 1, func)
        else:
            self.execute(self.schedule_after_with_repeat, delay, 1, func)

    def schedule(self, func: Callable[[], Any]) -> Future:
        return self.execute(func)

    # tasks

    def execute(self, func: Callable[..., Any], *args: Any) -> Future:
        """Run ``func(*args)`` in this loop: at once if called from it, else soon.

        The returned future holds the result or the exception raised.
        """
        future: Future = Future()
        if self.in_this_loop():
            _run_into(future, func, args)
        else:
            with self._functor_lock:
                self._functors.append(lambda: _run_into(future, func, args))
            self._notifier.notify()
        return future

    def _run_functors(self) -> None:
        # Never block here: another thread may be appending.
        if not self._functor_lock.acquire(blocking=False):
            return
        try:
            functors, self._functors = self._functors, []
        finally:
            self._functor_lock.release()
        for functor in functors:
            functor()

    # channels

    def register(self, events: int, channel: Channel) -> bool:
        """Start polling ``channel`` for ``events``."""
        if events == 0 or self._poller is None:
            return False
        if channel.unique_id != 0:
            raise ValueError(f"channel {channel!r} is already registered")

        limit = EventLoop._max_open_fd
        if limit > 0 and channel.fileno() + 1 >= limit:
            logger.error("Register failed! Max open fd %d, current fd %d", limit, channel.fileno())
            return False

        channel.unique_id = _next_channel_id()
        logger.info("Register %d to me %d", channel.unique_id, threading.get_ident())
        if not self._poller.register(channel.fileno(), events, channel):
            return False
        if channel.unique_id in self._channels:
            return False
        self._channels[channel.unique_id] = channel
        return True

    def modify(self, events: int, channel: Channel) -> bool:
        """Change the events ``channel`` is polled for."""
        if channel.unique_id not in self._channels:
            raise KeyError(f"channel {channel!r} is not registered")
        if self._poller is None:
            return False
        return self._poller.modify(channel.fileno(), events, channel)

    def unregister(self, events: int, channel: Channel) -> None:
        """Stop polling ``channel`` and forget it."""
        fd = channel.fileno()
        logger.info("Unregister socket id %d", fd)
        if self._poller is not None:
            self._poller.unregister(fd, events)
        if self._channels.pop(channel.unique_id, None) is None:
            logger.error("Can not find socket id %d", fd)
            raise KeyError(f"channel {channel!r} is not registered")

    # running

    def run(self) -> None:
        """Poll until the owning group stops, then release every channel."""
        self.register(EventType.READ, self._notifier)
        while not self._group.is_stopped():
            timeout = min(_DEFAULT_POLL_TIME, self._timers.nearest())
            self._loop_once(max(_MIN_POLL_TIME, timeout))
        self._release_channels()

    def _loop_once(self, timeout: float) -> bool:
        try:
            if not self._channels or self._poller is None:
                time.sleep(timeout)
                return False
            try:
                fired = self._poller.poll(len(self._channels), math.ceil(timeout * 1000))
            except OSError as exc:
                logger.error("poll failed: %s", exc)
                return False

            # Stale events are dispatched too: handlers must not unregister other channels.
            for event in fired:
                channel = event.channel
                if event.events & EventType.READ and not channel.handle_read():
                    channel.handle_error()
                if event.events & EventType.WRITE and not channel.handle_write():
                    channel.handle_error()
                if event.events & EventType.ERROR:
                    logger.error("error event for %d", channel.fileno())
                    channel.handle_error()
            return True
        finally:
            self._timers.update()
            self._run_functors()

    def _release_channels(self) -> None:
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            if self._poller is not None:
                self._poller.unregister(channel.fileno(), EventType.READ | EventType.WRITE)
            if channel is not self._notifier:
                close = getattr(channel, "close", None)
                if callable(close):
                    close()
        if self._poller is not None:
            self._poller.close()
            self._poller = None

    def close(self) -> None:
        """Release channels, the poller and the wake-up pipe."""
        if self._poller is not None:
            self._release_channels()
        self._notifier.close()
        ref = getattr(_thread_state, "loop", None)
        if ref is not None and ref() is self:
            _thread_state.loop = None