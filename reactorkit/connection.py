"""Stream connections driven by an event loop."""

from __future__ import annotations

import contextlib
import logging
import socket
from collections import deque
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Sequence

from .poller import Channel, EventType
from .sockets import SocketAddr, set_nodelay

__all__ = ["ShutdownMode", "ConnectionState", "Connection"]

logger = logging.getLogger(__name__)

_RECV_CHUNK = 8 * 1024
_IOV_MAX = 64


class ShutdownMode(Enum):
    BOTH = "both"
    READ = "read"
    WRITE = "write"


class ConnectionState(Enum):
    NONE = "none"
    CONNECTED = "connected"
    CLOSE_WAIT_WRITE = "close_wait_write"  # closing, but data is still queued
    PASSIVE_CLOSE = "passive_close"
    ACTIVE_CLOSE = "active_close"
    ERROR = "error"
    CLOSED = "closed"


_SENDABLE = (ConnectionState.CONNECTED, ConnectionState.CLOSE_WAIT_WRITE)
_CLOSING = (ConnectionState.PASSIVE_CLOSE, ConnectionState.ACTIVE_CLOSE, ConnectionState.ERROR)


def _batches(chunks: Sequence[bytes], size: int) -> Iterator[Sequence[bytes]]:
    for start in range(0, len(chunks), size):
        yield chunks[start:start + size]


def _write_vectored(sock: socket.socket, chunks: Sequence[bytes]) -> int:
    """Send ``chunks`` in order; return how many bytes the kernel took."""
    total = 0
    for batch in _batches(chunks, _IOV_MAX):
        expected = sum(map(len, batch))
        while True:
            try:
                if hasattr(sock, "sendmsg"):
                    sent = sock.sendmsg(batch)
                else:
                    sent = sock.send(b"".join(batch))
            except BlockingIOError:
                return total
            except InterruptedError:
                continue
            break
        total += sent
        if sent != expected:
            return total
    return total


class Connection(Channel):
    """A connected stream socket with buffered, non-blocking I/O.

    Callbacks are plain attributes:

    * ``on_connect(conn)`` when the connection is established,
    * ``on_disconnect(conn)`` when it is torn down,
    * ``on_message(conn, data) -> int`` with the buffered bytes, returning
      how many were consumed (0 waits for more); the default echoes,
    * ``on_write_complete(conn)`` when queued data has all been sent.
    """

    def __init__(self, loop: Any) -> None:
        super().__init__()
        self.loop = loop
        self._sock: socket.socket | None = None
        self._state = ConnectionState.NONE
        self._peer = SocketAddr()
        self._recv_buf = bytearray()
        self._send_buf: deque[bytes] = deque()
        self._processing_read = False
        self._batch_buf = bytearray()

        self.min_packet_size = 1
        self.batch_send = True
        self.user_data: Any = None
        self.on_connect: Callable[[Connection], None] | None = None
        self.on_disconnect: Callable[[Connection], None] | None = None
        self.on_message: Callable[[Connection, bytes], int] | None = None
        self.on_write_complete: Callable[[Connection], None] | None = None

    def __repr__(self) -> str:
        return f"Connection(fd={self.fileno()}, peer={self._peer}, state={self._state.name})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def peer(self) -> SocketAddr:
        return self._peer

    def attach(self, sock: socket.socket | None, peer: SocketAddr) -> bool:
        """Take over a connected socket; False if there is none."""
        if sock is None:
            return False
        if self._state is not ConnectionState.NONE:
            raise RuntimeError(f"connection already attached ({self._state.name})")
        sock.setblocking(False)
        self._sock = sock
        self._peer = peer
        self._state = ConnectionState.CONNECTED
        return True

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    def set_nodelay(self, enable: bool) -> None:
        if self._sock is not None:
            set_nodelay(self._sock, enable)

    def active_close(self) -> None:
        """Close from our side once queued data is flushed."""
        if self._sock is None:
            return
        if not self._send_buf:
            self.shutdown(ShutdownMode.BOTH)
            self._state = ConnectionState.ACTIVE_CLOSE
        else:
            self._state = ConnectionState.CLOSE_WAIT_WRITE
            self.shutdown(ShutdownMode.READ)
        self.loop.modify(EventType.WRITE, self)

    def shutdown(self, mode: ShutdownMode) -> None:
        """Shut the socket down at once; queued data is dropped unless reading only."""
        if self._sock is None:
            return
        if mode is ShutdownMode.READ:
            how = socket.SHUT_RD
        else:
            if self._send_buf:
                logger.warning("%d shutdown %s, but still has data to send",
                               self.fileno(), mode.value)
                self._send_buf.clear()
            how = socket.SHUT_WR if mode is ShutdownMode.WRITE else socket.SHUT_RDWR
        with contextlib.suppress(OSError):
            self._sock.shutdown(how)

    def handle_read(self) -> bool:
        if self._state is not ConnectionState.CONNECTED:
            logger.error("%d handle_read in state %s", self.fileno(), self._state.name)
            return False

        self._processing_read = True
        try:
            return self._read_all()
        finally:
            self._processing_read = False
            if self._batch_buf:
                pending = bytes(self._batch_buf)
                self._batch_buf.clear()
                self.send_packet(pending)

    def _read_all(self) -> bool:
        assert self._sock is not None
        while True:
            try:
                chunk = self._sock.recv(_RECV_CHUNK)
            except BlockingIOError:
                return True
            except InterruptedError:
                continue
            except OSError as exc:
                logger.error("%d handle_read error %s", self.fileno(), exc)
                self.shutdown(ShutdownMode.BOTH)
                self._state = ConnectionState.ERROR
                return False

            if not chunk:
                logger.warning("%d handle_read EOF", self.fileno())
                if not self._send_buf:
                    self.shutdown(ShutdownMode.BOTH)
                    self._state = ConnectionState.PASSIVE_CLOSE
                else:
                    self._state = ConnectionState.CLOSE_WAIT_WRITE
                    self.shutdown(ShutdownMode.READ)
                    self.loop.modify(EventType.WRITE, self)
                return False

            self._recv_buf += chunk
            self._dispatch_messages()

    def _dispatch_messages(self) -> None:
        while self._recv_buf and len(self._recv_buf) >= self.min_packet_size:
            data = bytes(self._recv_buf)
            if self.on_message is not None:
                consumed = self.on_message(self, data)
            else:
                consumed = len(data)
                self.send_packet(data)
            if not consumed:
                break
            del self._recv_buf[:consumed]

    def handle_write(self) -> bool:
        if self._state not in _SENDABLE:
            logger.error("%d handle_write in state %s", self.fileno(), self._state.name)
            return False
        assert self._sock is not None

        chunks = list(self._send_buf)
        expected = sum(map(len, chunks))
        try:
            sent = _write_vectored(self._sock, chunks)
        except OSError as exc:
            logger.error("%d handle_write error %s", self.fileno(), exc)
            self.shutdown(ShutdownMode.BOTH)
            self._state = ConnectionState.ERROR
            return False

        self._consume_sent(sent)
        if sent == expected:
            self.loop.modify(EventType.READ, self)
            if self.on_write_complete is not None:
                self.on_write_complete(self)
            if self._state is ConnectionState.CLOSE_WAIT_WRITE:
                self._state = ConnectionState.PASSIVE_CLOSE
                return False
        return True

    def _consume_sent(self, sent: int) -> None:
        while sent and self._send_buf:
            head = self._send_buf[0]
            if sent >= len(head):
                sent -= len(head)
                self._send_buf.popleft()
            else:
                self._send_buf[0] = head[sent:]
                sent = 0

    def handle_error(self) -> None:
        logger.error("%d handle_error in state %s", self.fileno(), self._state.name)
        if self._state not in _CLOSING:
            return
        self._state = ConnectionState.CLOSED
        if self.on_disconnect is not None:
            self.on_disconnect(self)
        self.loop.unregister(EventType.READ | EventType.WRITE, self)
        if self._sock is not None:
            self._sock.close()

    def _fail_send(self) -> bool:
        self.shutdown(ShutdownMode.BOTH)
        self._state = ConnectionState.ERROR
        self.loop.modify(EventType.WRITE, self)
        return False

    def send_packet(self, data: bytes | bytearray | memoryview) -> bool:
        """Send bytes, queueing what the kernel does not take. Loop thread only."""
        if not self.loop.in_this_loop():
            raise RuntimeError("send_packet called outside the connection's loop")
        if not data:
            return True
        if self._state not in _SENDABLE:
            return False
        if self._send_buf:
            self._send_buf.append(bytes(data))
            return True
        if self._processing_read and self.batch_send:
            self._batch_buf += data
            return True

        assert self._sock is not None
        try:
            sent = self._send(data)
        except OSError as exc:
            logger.error("%d send error %s", self.fileno(), exc)
            return self._fail_send()

        if sent < len(data):
            logger.warning("%d want send %d bytes, but only send %d",
                           self.fileno(), len(data), sent)
            self._send_buf.append(bytes(data[sent:]))
            self.loop.modify(EventType.READ | EventType.WRITE, self)
        elif self.on_write_complete is not None:
            self.on_write_complete(self)
        return True

    def _send(self, data: bytes | bytearray | memoryview) -> int:
        assert self._sock is not None
        try:
            return self._sock.send(data)
        except (BlockingIOError, InterruptedError):
            return 0

    def send_packets(self, chunks: Iterable[bytes | bytearray | memoryview]) -> bool:
        """Send several chunks in order with as few system calls as possible."""
        if self._state not in _SENDABLE:
            return False
        pieces = [bytes(chunk) for chunk in chunks if chunk]
        if not pieces:
            return True
        if self._send_buf:
            self._send_buf.extend(pieces)
            return True
        if self._processing_read and self.batch_send:
            for piece in pieces:
                self._batch_buf += piece
            return True

        assert self._sock is not None
        expected = sum(map(len, pieces))
        try:
            sent = _write_vectored(self._sock, pieces)
        except OSError as exc:
            logger.error("%d send error %s", self.fileno(), exc)
            return self._fail_send()

        if sent < expected:
            self._send_buf.extend(pieces)
            self._consume_sent(sent)
            self.loop.modify(EventType.READ | EventType.WRITE, self)
        elif self.on_write_complete is not None:
            self.on_write_complete(self)
        return True

    def safe_send(self, data: bytes | bytearray | memoryview) -> bool:
        """Send from any thread; off-loop sends are handed to the loop."""
        if self.loop.in_this_loop():
            return self.send_packet(data)
        self.loop.execute(self.send_packet, bytes(data))
        return True

    def notify_connected(self) -> None:
        """Run the connect callback if the connection is established."""
        if self._state is not ConnectionState.CONNECTED:
            return
        if self.on_connect is not None:
            self.on_connect(self)