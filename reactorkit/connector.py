"""Non-blocking outgoing TCP connection attempts."""

from __future__ import annotations

import errno
import logging
import socket
from enum import Enum
from typing import Any, Callable

from .connection import Connection
from .poller import Channel, EventType
from .sockets import (
    SocketAddr,
    create_tcp_socket,
    set_nodelay,
    set_recv_buffer,
    set_send_buffer,
)

__all__ = ["ConnectState", "Connector"]

logger = logging.getLogger(__name__)

_IN_PROGRESS = {errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN}


class ConnectState(Enum):
    NONE = "none"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def _establish(
    loop: Any,
    sock: socket.socket,
    peer: SocketAddr,
    on_new_connection: Callable[[Connection], None] | None,
) -> None:
    conn = Connection(loop)
    conn.attach(sock, peer)
    if loop.register(EventType.READ, conn):
        if on_new_connection is not None:
            on_new_connection(conn)
        conn.notify_connected()
    else:
        logger.error("Connected but register socket %d failed!", conn.fileno())
        sock.close()


class Connector(Channel):
    """One attempt to connect to a peer.

    On success the socket becomes a :class:`Connection` registered on
    ``dst_loop`` (or the loop ``next_loop()`` returns, or ``loop``), and
    ``on_new_connection(conn)`` runs there. On failure
    ``on_failure(loop, peer)`` runs on ``dst_loop`` or ``loop``.
    """

    def __init__(
        self,
        loop: Any,
        on_new_connection: Callable[[Connection], None] | None = None,
        on_failure: Callable[[Any, SocketAddr], None] | None = None,
        next_loop: Callable[[], Any] | None = None,
    ) -> None:
        super().__init__()
        self.loop = loop
        self.on_new_connection = on_new_connection
        self.on_failure = on_failure
        self._next_loop = next_loop
        self._sock: socket.socket | None = None
        self._peer = SocketAddr()
        self._dst_loop: Any = None
        self._state = ConnectState.NONE
        self._timer_id: Any = None

    def __repr__(self) -> str:
        return f"Connector(fd={self.fileno()}, peer={self._peer}, state={self._state.name})"

    @property
    def state(self) -> ConnectState:
        return self._state

    @property
    def peer(self) -> SocketAddr:
        return self._peer

    def connect(self, addr: SocketAddr, timeout: float | None = None, dst_loop: Any = None) -> bool:
        """Start connecting to ``addr``; ``timeout`` is in seconds, None for none."""
        if not addr.is_valid():
            return False
        if addr.ip == "0.0.0.0":
            logger.error("Why connect to 0.0.0.0")
            return False
        if self._state is not ConnectState.NONE:
            logger.info("Already connect or connecting %s", self._peer)
            return False

        self._peer = addr
        try:
            sock = create_tcp_socket()
        except OSError as exc:
            logger.error("Cannot create socket: %s", exc)
            return False

        self._sock = sock
        self._dst_loop = dst_loop
        sock.setblocking(False)
        set_nodelay(sock)
        set_recv_buffer(sock)
        set_send_buffer(sock)

        err = sock.connect_ex(addr.as_tuple())
        if err == 0:
            self._on_success()
            return True
        if err in _IN_PROGRESS:
            logger.info("EINPROGRESS : client socket %d connected to %s", sock.fileno(), addr)
            self._state = ConnectState.CONNECTING
            self.loop.register(EventType.WRITE, self)
            if timeout is not None:
                self._timer_id = self.loop.schedule_after_with_repeat(
                    timeout, 1, self._on_timeout
                )
            return True

        self._on_failed()
        return False

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    def handle_read(self) -> bool:
        raise RuntimeError("a connector is never polled for reading")

    def handle_write(self) -> bool:
        """The socket became writable: check whether the connect succeeded."""
        if self._sock is None:
            return False
        try:
            error = self._sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as exc:
            error = exc.errno or -1
        if error != 0:
            logger.error("handle_write failed: client socket %d connected to %s, error is %s",
                         self.fileno(), self._peer, error)
            return False
        self._on_success()
        return True

    def handle_error(self) -> None:
        if self._sock is None or self._state is ConnectState.CONNECTED:
            return
        self._on_failed()

    def _on_timeout(self) -> None:
        if self._state is not ConnectState.CONNECTED:
            self._timer_id = None
            self._on_failed()

    def _cancel_timeout(self) -> None:
        if self._timer_id is not None:
            self.loop.cancel(self._timer_id)
            self._timer_id = None

    def _target_loop(self) -> Any:
        if self._dst_loop is not None:
            return self._dst_loop
        if self._next_loop is not None:
            loop = self._next_loop()
            if loop is not None:
                return loop
        return self.loop

    def _on_success(self) -> None:
        # A write event may follow the error event of a failed attempt.
        if self._state in (ConnectState.FAILED, ConnectState.CONNECTED):
            return
        assert self._sock is not None

        old_state = self._state
        self._state = ConnectState.CONNECTED
        self._cancel_timeout()
        logger.info("Connect success! Socket %d, connected to %s", self.fileno(), self._peer)

        target = self._target_loop()
        callback, self.on_new_connection = self.on_new_connection, None
        if old_state is ConnectState.CONNECTING:
            self.loop.unregister(EventType.WRITE, self)
        target.execute(_establish, target, self._sock, self._peer, callback)

    def _on_failed(self) -> None:
        if self._state in (ConnectState.FAILED, ConnectState.CONNECTED):
            return

        old_state = self._state
        self._state = ConnectState.FAILED
        self._cancel_timeout()
        logger.info("Failed client socket %d connected to %s", self.fileno(), self._peer)

        target = self._dst_loop if self._dst_loop is not None else self.loop

        def report_failure() -> None:
            if self.on_failure is not None:
                self.on_failure(target, self._peer)
            self.loop.execute(self._release, old_state)

        target.execute(report_failure)

    def _release(self, old_state: ConnectState) -> None:
        if old_state is ConnectState.CONNECTING:
            self.loop.unregister(EventType.WRITE, self)
        if self._sock is not None:
            self._sock.close()
            self._sock = None