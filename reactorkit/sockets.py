"""IPv4 socket addresses and socket option helpers."""

from __future__ import annotations

import logging
import operator
import socket
import struct
import sys
from dataclasses import dataclass

try:
    import fcntl
except ImportError:  # not available on every platform
    fcntl = None

try:
    import resource
except ImportError:  # not available on every platform
    resource = None

__all__ = [
    "SocketAddr",
    "convert_ip",
    "create_tcp_socket",
    "create_udp_socket",
    "set_nodelay",
    "set_reuse_addr",
    "set_send_buffer",
    "set_recv_buffer",
    "local_addr",
    "peer_addr",
    "local_ip",
    "max_open_fd",
    "set_max_open_fd",
]

logger = logging.getLogger(__name__)

_DEFAULT_BUFFER_SIZE = 64 * 1024
_SIOCGIFFLAGS = 0x8913
_SIOCGIFADDR = 0x8915
_IFF_UP = 0x1
_IFF_LOOPBACK = 0x8


def convert_ip(ip: str) -> str:
    """Resolve the ``loopback`` and ``localhost`` aliases to dotted IPv4 text."""
    if ip.startswith("loopback"):
        return "127.0.0.1"
    if ip.startswith("localhost"):
        return local_ip()
    return ip


@dataclass(frozen=True)
class SocketAddr:
    """An IPv4 address and a port in host byte order.

    ``SocketAddr()`` is the invalid, empty address.
    """

    ip: str | None = None
    port: int = 0

    def __post_init__(self) -> None:
        port = operator.index(self.port)
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        object.__setattr__(self, "port", port)
        if self.ip is None:
            return
        text = convert_ip(self.ip)
        try:
            packed = socket.inet_aton(text)
        except OSError:
            raise ValueError(f"invalid IPv4 address: {self.ip!r}") from None
        object.__setattr__(self, "ip", socket.inet_ntoa(packed))

    @classmethod
    def parse(cls, text: str) -> SocketAddr:
        """Build an address from ``"ip:port"`` text."""
        ip, sep, port = text.partition(":")
        if not sep:
            raise ValueError(f"expected ip:port, got {text!r}")
        return cls(ip, int(port))

    def is_valid(self) -> bool:
        return self.ip is not None

    def as_tuple(self) -> tuple[str, int]:
        """The ``(host, port)`` pair the socket module expects."""
        return (self.ip or "0.0.0.0", self.port)

    def __str__(self) -> str:
        host, port = self.as_tuple()
        return f"{host}:{port}"


def create_tcp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)


def create_udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)


def set_nodelay(sock: socket.socket, enable: bool = True) -> None:
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1 if enable else 0)


def set_reuse_addr(sock: socket.socket) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)


def set_send_buffer(sock: socket.socket, size: int = _DEFAULT_BUFFER_SIZE) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, size)


def set_recv_buffer(sock: socket.socket, size: int = _DEFAULT_BUFFER_SIZE) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, size)


def local_addr(sock: socket.socket) -> SocketAddr:
    host, port = sock.getsockname()[:2]
    return SocketAddr(host, port)


def peer_addr(sock: socket.socket) -> SocketAddr:
    host, port = sock.getpeername()[:2]
    return SocketAddr(host, port)


def local_ip() -> str:
    """The IPv4 address of the first interface that is up and not loopback.

    Returns ``"0.0.0.0"`` when there is none; on platforms without
    interface queries ``"127.0.0.1"`` is returned instead.
    """
    if fcntl is None or not sys.platform.startswith("linux"):
        logger.warning("local_ip only works on Linux, returning 127.0.0.1 instead")
        return "127.0.0.1"

    try:
        interfaces = socket.if_nameindex()
    except OSError:
        return "0.0.0.0"

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        for _, name in interfaces:
            request = struct.pack("256s", name.encode()[:15])
            try:
                reply = fcntl.ioctl(probe.fileno(), _SIOCGIFFLAGS, request)
            except OSError:
                continue
            (flags,) = struct.unpack_from("H", reply, 16)
            if flags & _IFF_LOOPBACK or not flags & _IFF_UP:
                continue
            try:
                reply = fcntl.ioctl(probe.fileno(), _SIOCGIFADDR, request)
            except OSError:
                continue
            return socket.inet_ntoa(reply[20:24])
    return "0.0.0.0"


def max_open_fd() -> int:
    """The soft limit on open file descriptors, or 0 if it is unknown."""
    if resource is None:
        return 0
    try:
        soft, _ = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError):
        return 0
    return soft


def set_max_open_fd(limit: int) -> bool:
    """Raise the soft open-file limit to ``limit`` if the hard limit allows."""
    if resource is None:
        return False
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError):
        return False

    infinity = resource.RLIM_INFINITY
    if soft == infinity or limit <= soft:
        return True
    if hard != infinity and limit > hard:
        return False
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (limit, hard))
    except (OSError, ValueError):
        return False
    return True