import ipaddress
import socket

import pytest

from reactorkit import sockets
from reactorkit.sockets import (
    SocketAddr,
    convert_ip,
    create_tcp_socket,
    create_udp_socket,
    local_addr,
    local_ip,
    max_open_fd,
    peer_addr,
    set_max_open_fd,
    set_nodelay,
    set_reuse_addr,
)


def test_str_format():
    assert str(SocketAddr("127.0.0.1", 6379)) == "127.0.0.1:6379"


def test_parse_round_trip():
    addr = SocketAddr.parse("127.0.0.1:6379")
    assert addr.ip == "127.0.0.1"
    assert addr.port == 6379
    assert SocketAddr.parse(str(addr)) == addr


def test_parse_without_port_raises():
    with pytest.raises(ValueError):
        SocketAddr.parse("127.0.0.1")


def test_loopback_alias():
    assert convert_ip("loopback") == "127.0.0.1"
    assert SocketAddr("loopback", 8000) == SocketAddr("127.0.0.1", 8000)


def test_plain_ip_is_unchanged():
    assert convert_ip("10.1.2.3") == "10.1.2.3"


def test_localhost_alias_matches_local_ip():
    assert convert_ip("localhost") == local_ip()


def test_default_address_is_invalid():
    addr = SocketAddr()
    assert not addr.is_valid()
    assert str(addr) == "0.0.0.0:0"
    assert SocketAddr("0.0.0.0", 0).is_valid()


def test_equality_and_hash():
    a = SocketAddr("192.168.1.9", 80)
    b = SocketAddr("192.168.1.9", 80)
    assert a == b
    assert len({a, b, SocketAddr("192.168.1.9", 81)}) == 2


def test_as_tuple():
    assert SocketAddr("10.0.0.7", 53).as_tuple() == ("10.0.0.7", 53)


@pytest.mark.parametrize("port", [-1, 65536])
def test_bad_port_raises(port):
    with pytest.raises(ValueError):
        SocketAddr("127.0.0.1", port)


def test_bad_ip_raises():
    with pytest.raises(ValueError):
        SocketAddr("not-an-ip", 1)


def test_local_and_peer_addr():
    with create_tcp_socket() as server:
        set_reuse_addr(server)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        bound = local_addr(server)
        assert bound.ip == "127.0.0.1"
        assert bound.port > 0
        with create_tcp_socket() as client:
            client.connect(bound.as_tuple())
            assert peer_addr(client) == bound
            accepted, _ = server.accept()
            with accepted:
                assert peer_addr(accepted) == local_addr(client)


def test_socket_options():
    with create_tcp_socket() as sock:
        set_nodelay(sock, True)
        assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
        set_nodelay(sock, False)
        assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) == 0
        set_reuse_addr(sock)
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR) != 0


def test_udp_socket_type():
    with create_udp_socket() as sock:
        assert sock.type == socket.SOCK_DGRAM
        assert sock.family == socket.AF_INET


def test_local_ip_is_ipv4_text():
    text = local_ip()
    assert str(ipaddress.IPv4Address(text)) == text


def test_set_max_open_fd_to_current_succeeds():
    assert set_max_open_fd(max_open_fd()) is True


def test_set_max_open_fd_limits(monkeypatch):
    calls = []
    monkeypatch.setattr(sockets.resource, "getrlimit", lambda which: (100, 200))
    monkeypatch.setattr(sockets.resource, "setrlimit", lambda which, limits: calls.append(limits))
    assert set_max_open_fd(50) is True
    assert calls == []
    assert set_max_open_fd(300) is False
    assert set_max_open_fd(150) is True
    assert calls == [(150, 200)]