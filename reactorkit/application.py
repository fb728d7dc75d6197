"""The process-wide application: a base event loop plus optional worker loops."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from enum import Enum
from typing import Any, Callable, Sequence

from .connection import Connection
from .datagram import DatagramSocket
from .event_loop import EventLoop
from .event_loop_group import EventLoopGroup
from .sockets import SocketAddr, convert_ip

__all__ = ["Application", "LOGO"]

logger = logging.getLogger("reactorkit")

LOGO = (
    "  __ _ _ __   __ _ _ __   __ _ ___  \n"
    " / _` | '_ \\ / _` | '_ \\ / _` / __| \n"
    "| (_| | | | | (_| | | | | (_| \\__ \\ \n"
    " \\__,_|_| |_|\\__,_|_| |_|\\__,_|___/ \n"
)

AddrLike = SocketAddr | str | tuple


class _State(Enum):
    NONE = "none"
    STARTED = "started"
    STOPPED = "stopped"


def _as_addr(addr: AddrLike) -> SocketAddr:
    if isinstance(addr, SocketAddr):
        return addr
    if isinstance(addr, str):
        return SocketAddr.parse(addr)
    ip, port = addr
    return SocketAddr(convert_ip(ip), port)


class Application:
    """Owns the base event loop and the worker loops of a process.

    The base loop is created in the constructing thread and does listening
    and connecting; if workers are configured, new connections go to them
    in round-robin order. ``on_init(argv) -> bool`` runs before the workers
    start and ``on_exit()`` runs when :meth:`run` finishes.
    """

    _instance: Application | None = None
    _instance_lock = threading.Lock()

    def __init__(self) -> None:
        self._base_group = EventLoopGroup(0)
        self._base = EventLoop(self._base_group)
        self._base.load_balancer = self.next_loop
        self._worker_group = EventLoopGroup(0)
        self._state = _State.NONE
        self.on_init: Callable[[Sequence[str]], bool] | None = None
        self.on_exit: Callable[[], None] | None = None
        self.show_logo = False

    def __repr__(self) -> str:
        return f"Application(workers={len(self._worker_group)}, state={self._state.name})"

    def __enter__(self) -> Application:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._base.close()

    @classmethod
    def instance(cls) -> Application:
        """The process-wide application, created on first use."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def run(self, argv: Sequence[str] | None = None) -> None:
        """Run until :meth:`exit` is called or SIGINT arrives."""
        if argv is None:
            argv = sys.argv
        try:
            if self._state is not _State.NONE:
                return
            if self.on_init is not None and not self.on_init(argv):
                print("onInit FAILED, exit!")
                return
            if self.show_logo:
                print(LOGO)

            previous = None
            in_main = threading.current_thread() is threading.main_thread()
            if in_main:
                previous = signal.signal(signal.SIGINT, lambda *_: self.exit())
            try:
                self._state = _State.STARTED
                self._worker_group.start()
                self._base.run()

                self._base_group.wait()
                print("Stopped BaseEventLoopGroup ...")
                self._worker_group.wait()
                print("Stopped WorkerEventLoopGroup...")
            finally:
                if in_main and previous is not None:
                    signal.signal(signal.SIGINT, previous)
                self._base.close()
        finally:
            if self.on_exit is not None:
                self.on_exit()

    def exit(self) -> None:
        """Ask every loop to stop."""
        if self._state is _State.STOPPED:
            return
        self._state = _State.STOPPED
        self._base_group.stop()
        self._worker_group.stop()

    def is_exit(self) -> bool:
        return self._state is _State.STOPPED

    def base_loop(self) -> EventLoop:
        """The loop that listens and connects, and does I/O when there are no workers."""
        return self._base

    def _default_bind_callback(self, success: bool, addr: SocketAddr) -> None:
        if success:
            logger.info("Listen succ for %s", addr)
        else:
            logger.error("Listen failed for %s", addr)
            self.exit()

    def listen(self, addr: AddrLike,
               on_new_connection: Callable[[Connection], None] | None,
               on_bind: Callable[[bool, SocketAddr], None] | None = None) -> None:
        """Listen for TCP; ``on_bind(success, addr)`` reports the outcome."""
        target = _as_addr(addr)
        report = on_bind if on_bind is not None else self._default_bind_callback
        loop = self._base

        def task() -> None:
            report(loop.listen(target, on_new_connection) is not None, target)

        loop.execute(task)

    def listen_udp(self, addr: AddrLike,
                   on_message: Callable[[DatagramSocket, bytes], None] | None,
                   on_create: Callable[[DatagramSocket], None] | None,
                   on_bind: Callable[[bool, SocketAddr], None] | None = None) -> None:
        """Bind a UDP server; ``on_bind(success, addr)`` reports the outcome."""
        target = _as_addr(addr)
        report = on_bind if on_bind is not None else self._default_bind_callback
        loop = self._base

        def task() -> None:
            report(loop.listen_udp(target, on_message, on_create) is not None, target)

        loop.execute(task)

    def create_client_udp(self, on_message: Callable[[DatagramSocket, bytes], None] | None,
                          on_create: Callable[[DatagramSocket], None] | None) -> None:
        """Create an unbound UDP socket on the base loop."""
        loop = self._base
        loop.execute(loop.create_client_udp, on_message, on_create)

    def connect(self, dst: AddrLike,
                on_new_connection: Callable[[Connection], None] | None,
                on_failure: Callable[[Any, SocketAddr], None] | None,
                timeout: float | None = None,
                dst_loop: EventLoop | None = None) -> None:
        """Connect over TCP; ``timeout`` is in seconds, None for none."""
        target = _as_addr(dst)
        loop = self._base
        loop.execute(loop.connect, target, on_new_connection, on_failure, timeout, dst_loop)

    def next_loop(self) -> EventLoop:
        """A worker loop in round-robin order, or the base loop if there is none."""
        loop = self._worker_group.next_loop()
        return loop if loop is not None else self._base

    def set_num_workers(self, n: int) -> None:
        """Set the number of worker loops; only before :meth:`run`."""
        if self._state is not _State.NONE:
            raise RuntimeError("workers can only be set before the application runs")
        self._worker_group.num_loops = n

    def num_workers(self) -> int:
        """Worker loops plus the base loop."""
        return 1 + len(self._worker_group)