"""Listening TCP socket that hands accepted connections to event loops."""

from __future__ import annotations

import errno
import logging
import socket
from typing import Any, Callable

from .connection import Connection
from .poller import Channel, EventType
from .sockets import (
    SocketAddr,
    create_tcp_socket,
    local_addr,
    set_nodelay,
    set_recv_buffer,
    set_reuse_addr,
    set_send_buffer,
)

__all__ = ["Acceptor"]

logger = logging.getLogger(__name__)

LISTEN_QUEUE = 1024

_RETRY_ERRNOS = {errno.EINTR, errno.ECONNABORTED, errno.EPROTO}
_NO_FD_ERRNOS = {errno.EMFILE, errno.ENFILE}
_NO_MEMORY_ERRNOS = {errno.ENOBUFS, errno.ENOMEM}


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
        logger.error("Failed to register socket %d", conn.fileno())
        sock.close()


class Acceptor(Channel):
    """Accepts TCP connections on ``loop``.

    Each accepted socket becomes a :class:`Connection` registered on the
    loop returned by ``next_loop()`` (``loop`` itself when that is None),
    and ``on_new_connection(conn)`` is called there before the
    connection's own connect callback.
    """

    def __init__(
        self,
        loop: Any,
        on_new_connection: Callable[[Connection], None] | None = None,
        next_loop: Callable[[], Any] | None = None,
    ) -> None:
        super().__init__()
        self.loop = loop
        self.on_new_connection = on_new_connection
        self._next_loop = next_loop
        self._sock: socket.socket | None = None
        self._port: int | None = None

    def __repr__(self) -> str:
        return f"Acceptor(fd={self.fileno()}, port={self._port})"

    @property
    def local_address(self) -> SocketAddr:
        """The address the listening socket is bound to."""
        if self._sock is None:
            return SocketAddr()
        return local_addr(self._sock)

    def bind(self, addr: SocketAddr) -> bool:
        """Bind, listen and register for reads; False on any failure."""
        if not addr.is_valid():
            return False
        if self._sock is not None:
            logger.error("Already listen %s", self._port)
            return False

        try:
            sock = create_tcp_socket()
        except OSError as exc:
            logger.error("Cannot create socket: %s", exc)
            return False

        sock.setblocking(False)
        set_nodelay(sock)
        set_reuse_addr(sock)
        set_recv_buffer(sock)
        set_send_buffer(sock)

        try:
            sock.bind(addr.as_tuple())
        except OSError as exc:
            logger.error("Cannot bind to %s: %s", addr, exc)
            sock.close()
            return False
        try:
            sock.listen(LISTEN_QUEUE)
        except OSError as exc:
            logger.error("Cannot listen on %s: %s", addr, exc)
            sock.close()
            return False

        self._sock = sock
        self._port = addr.port
        if not self.loop.register(EventType.READ, self):
            return False

        logger.info("Create listen socket %d on port %d", sock.fileno(), addr.port)
        return True

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    def _target_loop(self) -> Any:
        if self._next_loop is not None:
            loop = self._next_loop()
            if loop is not None:
                return loop
        return self.loop

    def handle_read(self) -> bool:
        """Accept every pending connection."""
        if self._sock is None:
            return False
        while True:
            try:
                sock, address = self._sock.accept()
            except BlockingIOError:
                return True
            except OSError as exc:
                if exc.errno in _RETRY_ERRNOS or isinstance(exc, InterruptedError):
                    continue
                if exc.errno in _NO_FD_ERRNOS:
                    logger.error("Not enough file descriptor available, error is %s, "
                                 "CPU may 100%%", exc.errno)
                    return True
                if exc.errno in _NO_MEMORY_ERRNOS:
                    logger.error("Not enough memory, limited by the socket buffer limits, "
                                 "CPU may 100%%")
                    return True
                logger.error("BUG: error = %s", exc.errno)
                return False

            peer = SocketAddr(address[0], address[1])
            target = self._target_loop()
            target.execute(_establish, target, sock, peer, self.on_new_connection)

    def handle_write(self) -> bool:
        raise RuntimeError("an acceptor is never polled for writing")

    def handle_error(self) -> None:
        logger.error("Acceptor handle_error")
        self.loop.unregister(EventType.READ, self)

    def close(self) -> None:
        """Close the listening socket."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.info("Close Acceptor %s", self._port)