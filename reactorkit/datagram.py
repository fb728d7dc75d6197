"""UDP sockets driven by an event loop."""

from __future__ import annotations

import logging
import socket
from collections import deque
from typing import Any, Callable

from .poller import Channel, EventType
from .sockets import SocketAddr, create_udp_socket, local_addr, set_reuse_addr

__all__ = ["DatagramSocket"]

logger = logging.getLogger(__name__)


class DatagramSocket(Channel):
    """A UDP socket, bound as a server or unbound as a client.

    ``on_message(sock, data)`` is called for each datagram received and
    ``on_create(sock)`` once the socket is registered with its loop.
    Replies go by default to the sender of the last datagram.
    """

    def __init__(
        self,
        loop: Any,
        on_message: Callable[[DatagramSocket, bytes], None] | None = None,
        on_create: Callable[[DatagramSocket], None] | None = None,
    ) -> None:
        super().__init__()
        self.loop = loop
        self.on_message = on_message
        self.on_create = on_create
        self.max_packet_size = 2048
        self._sock: socket.socket | None = None
        self._src_addr = SocketAddr()
        self._send_list: deque[tuple[bytes, SocketAddr]] = deque()

    def __repr__(self) -> str:
        return f"DatagramSocket(fd={self.fileno()})"

    @property
    def local_address(self) -> SocketAddr:
        """The address the socket is bound to."""
        if self._sock is None:
            return SocketAddr()
        return local_addr(self._sock)

    def bind(self, addr: SocketAddr | None = None) -> bool:
        """Create the socket, bind it if ``addr`` is valid, and register it."""
        if self._sock is not None:
            logger.error("UDP socket repeat create")
            return False
        try:
            sock = create_udp_socket()
        except OSError as exc:
            logger.error("Failed create udp socket! Error = %s", exc)
            return False

        sock.setblocking(False)
        set_reuse_addr(sock)

        if addr is not None and addr.is_valid():
            try:
                sock.bind(addr.as_tuple())
            except OSError as exc:
                sock.close()
                logger.error("cannot bind udp port %d: %s", addr.port, exc)
                return False

        self._sock = sock
        if not self.loop.register(EventType.READ, self):
            logger.error("add udp to loop failed, socket = %d", sock.fileno())
            return False

        if self.on_create is not None:
            self.on_create(self)
        logger.info("Create new udp fd = %d", sock.fileno())
        return True

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    def peer_addr(self) -> SocketAddr:
        """The sender of the most recent datagram."""
        return self._src_addr

    def handle_read(self) -> bool:
        if self._sock is None:
            return False
        while True:
            try:
                data, source = self._sock.recvfrom(self.max_packet_size)
            except BlockingIOError:
                return True
            except OSError as exc:
                logger.error("UDP fd %d, handle_read error: %s", self.fileno(), exc)
                return True
            if not data:
                logger.error("UDP fd %d, handle_read error: empty datagram", self.fileno())
                return True

            self._src_addr = SocketAddr(source[0], source[1])
            if self.on_message is not None:
                self.on_message(self, data)

    def _send(self, data: bytes, dst: SocketAddr) -> int:
        """Bytes sent, 0 if the socket would block, -1 on error."""
        assert self._sock is not None
        try:
            return self._sock.sendto(data, dst.as_tuple())
        except (BlockingIOError, InterruptedError):
            logger.warning("send wouldblock")
            return 0
        except OSError as exc:
            logger.error("sendto %s failed: %s", dst, exc)
            return -1

    def send_packet(self, data: bytes | bytearray | memoryview, dst: SocketAddr | None = None) -> bool:
        """Send a datagram to ``dst``, or to the last sender; queue it if blocked."""
        if not data:
            return True
        if self._sock is None:
            return False
        target = dst if dst is not None else self._src_addr
        payload = bytes(data)

        if self._send_list:
            self._send_list.append((payload, target))
            return True

        sent = self._send(payload, target)
        if sent == 0:
            self._send_list.append((payload, target))
            self.loop.modify(EventType.READ | EventType.WRITE, self)
            return True
        if sent < 0:
            logger.error("Fatal error when send udp to %s, must skip it", target)
            return False
        return True

    def handle_write(self) -> bool:
        while self._send_list:
            payload, target = self._send_list[0]
            sent = self._send(payload, target)
            if sent == 0:
                return True
            if sent < 0:
                logger.error("Fatal error when send udp to %s, must skip it", target)
            self._send_list.popleft()

        self.loop.modify(EventType.READ, self)
        return True

    def handle_error(self) -> None:
        logger.error("DatagramSocket handle_error")

    def close(self) -> None:
        """Close the socket."""
        if self._sock is not None:
            logger.info("Close Udp socket %d", self._sock.fileno())
            self._sock.close()
            self._sock = None