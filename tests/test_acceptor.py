import select
import socket

import pytest

from reactorkit.acceptor import Acceptor
from reactorkit.connection import Connection, ConnectionState
from reactorkit.poller import EventType
from reactorkit.sockets import SocketAddr


class FakeLoop:
    def __init__(self, register_ok=True):
        self.register_ok = register_ok
        self.calls = []

    def register(self, events, channel):
        self.calls.append(("register", events, channel))
        return self.register_ok

    def modify(self, events, channel):
        self.calls.append(("modify", events, channel))
        return True

    def unregister(self, events, channel):
        self.calls.append(("unregister", events, channel))

    def execute(self, func, *args):
        self.calls.append(("execute",))
        func(*args)

    def in_this_loop(self):
        return True


@pytest.fixture
def acceptor():
    loop = FakeLoop()
    accepted = []
    acc = Acceptor(loop, accepted.append)
    assert acc.bind(SocketAddr("127.0.0.1", 0)) is True
    yield acc, loop, accepted
    acc.close()
    for conn in accepted:
        conn.shutdown  # connections are dropped with the test


def test_bind_registers_for_read(acceptor):
    acc, loop, _ = acceptor
    assert loop.calls[0] == ("register", EventType.READ, acc)
    assert acc.fileno() >= 0
    assert acc.local_address.ip == "127.0.0.1"


def test_bind_invalid_address_fails():
    acc = Acceptor(FakeLoop())
    assert acc.bind(SocketAddr()) is False
    assert acc.fileno() == -1


def test_bind_twice_fails(acceptor):
    acc, _, _ = acceptor
    assert acc.bind(SocketAddr("127.0.0.1", 0)) is False


def test_bind_reports_register_failure():
    acc = Acceptor(FakeLoop(register_ok=False))
    try:
        assert acc.bind(SocketAddr("127.0.0.1", 0)) is False
    finally:
        acc.close()


def test_accepts_connection_and_calls_back(acceptor):
    acc, loop, accepted = acceptor
    client = socket.create_connection(acc.local_address.as_tuple(), timeout=2)
    try:
        select.select([acc.fileno()], [], [], 2)
        assert acc.handle_read() is True
        assert len(accepted) == 1
        conn = accepted[0]
        assert isinstance(conn, Connection)
        host, port = client.getsockname()
        assert conn.peer == SocketAddr(host, port)
        assert conn.state is ConnectionState.CONNECTED
        assert ("register", EventType.READ, conn) in loop.calls
    finally:
        client.close()


def test_new_connection_goes_to_next_loop():
    base = FakeLoop()
    worker = FakeLoop()
    accepted = []
    acc = Acceptor(base, accepted.append, lambda: worker)
    assert acc.bind(SocketAddr("127.0.0.1", 0))
    client = socket.create_connection(acc.local_address.as_tuple(), timeout=2)
    try:
        select.select([acc.fileno()], [], [], 2)
        assert acc.handle_read() is True
        assert accepted[0].loop is worker
        assert ("register", EventType.READ, accepted[0]) in worker.calls
        assert all(call[0] != "execute" for call in base.calls)
    finally:
        client.close()
        acc.close()


def test_handle_read_without_pending_returns_true(acceptor):
    acc, _, accepted = acceptor
    assert acc.handle_read() is True
    assert accepted == []


def test_handle_write_is_an_error(acceptor):
    acc, _, _ = acceptor
    with pytest.raises(RuntimeError):
        acc.handle_write()


def test_handle_error_unregisters(acceptor):
    acc, loop, _ = acceptor
    acc.handle_error()
    assert loop.calls[-1] == ("unregister", EventType.READ, acc)


def test_close_releases_socket(acceptor):
    acc, _, _ = acceptor
    acc.close()
    assert acc.fileno() == -1
    assert acc.local_address == SocketAddr()