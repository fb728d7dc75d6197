import socket

import pytest

from reactorkit.connection import Connection, ConnectionState, ShutdownMode
from reactorkit.poller import EventType
from reactorkit.sockets import SocketAddr


class FakeLoop:
    def __init__(self):
        self.inside = True
        self.modified = []
        self.unregistered = []
        self.executed = []

    def in_this_loop(self):
        return self.inside

    def modify(self, events, channel):
        self.modified.append(events)
        return True

    def unregister(self, events, channel):
        self.unregistered.append(events)

    def execute(self, func, *args):
        self.executed.append((func, args))


PEER = SocketAddr("127.0.0.1", 6379)


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    right.settimeout(5)
    loop = FakeLoop()
    conn = Connection(loop)
    assert conn.attach(left, PEER)
    yield conn, right, loop
    left.close()
    right.close()


def test_attach_sets_state_and_peer(pair):
    conn, _, _ = pair
    assert conn.state is ConnectionState.CONNECTED
    assert conn.peer == PEER
    assert conn.fileno() >= 0


def test_attach_without_socket_fails():
    conn = Connection(FakeLoop())
    assert conn.attach(None, PEER) is False
    assert conn.state is ConnectionState.NONE
    assert conn.fileno() == -1


def test_attach_twice_raises(pair):
    conn, _, _ = pair
    other, spare = socket.socketpair()
    try:
        with pytest.raises(RuntimeError):
            conn.attach(other, PEER)
    finally:
        other.close()
        spare.close()


def test_send_packet_delivers_and_completes(pair):
    conn, peer, _ = pair
    completed = []
    conn.on_write_complete = completed.append
    assert conn.send_packet(b"+PONG\r\n") is True
    assert peer.recv(100) == b"+PONG\r\n"
    assert completed == [conn]


def test_send_empty_packet_is_ok(pair):
    conn, _, loop = pair
    assert conn.send_packet(b"") is True
    assert loop.modified == []


def test_send_on_unattached_connection_fails():
    conn = Connection(FakeLoop())
    assert conn.send_packet(b"data") is False
    assert conn.send_packets([b"data"]) is False


def test_send_outside_loop_raises(pair):
    conn, _, loop = pair
    loop.inside = False
    with pytest.raises(RuntimeError):
        conn.send_packet(b"x")


def test_default_handler_echoes(pair):
    conn, peer, _ = pair
    peer.sendall(b"hello")
    assert conn.handle_read() is True
    assert peer.recv(100) == b"hello"


def test_on_message_consumes_and_keeps_rest(pair):
    conn, peer, _ = pair
    seen = []

    def on_message(c, data):
        seen.append(data)
        return 3 if len(data) >= 3 else 0

    conn.on_message = on_message
    conn.min_packet_size = 3
    peer.sendall(b"abcdefgh")
    assert conn.handle_read() is True
    assert seen == [b"abcdefgh", b"defgh", b"gh"] or seen == [b"abcdefgh", b"defgh"]
    peer.sendall(b"i")
    conn.handle_read()
    assert seen[-1] == b"ghi"


def test_batched_replies_sent_after_read(pair):
    conn, peer, _ = pair

    def on_message(c, data):
        c.send_packet(b"one")
        c.send_packet(b"two")
        return len(data)

    conn.on_message = on_message
    peer.sendall(b"x")
    assert conn.handle_read() is True
    assert peer.recv(100) == b"onetwo"


def test_eof_then_error_closes(pair):
    conn, peer, loop = pair
    disconnected = []
    conn.on_disconnect = disconnected.append
    peer.shutdown(socket.SHUT_WR)
    assert conn.handle_read() is False
    assert conn.state is ConnectionState.PASSIVE_CLOSE
    conn.handle_error()
    assert conn.state is ConnectionState.CLOSED
    assert disconnected == [conn]
    assert loop.unregistered == [EventType.READ | EventType.WRITE]


def test_handle_read_in_wrong_state(pair):
    conn, peer, _ = pair
    conn.active_close()
    assert conn.handle_read() is False


def test_active_close_with_empty_buffer(pair):
    conn, peer, loop = pair
    conn.active_close()
    assert conn.state is ConnectionState.ACTIVE_CLOSE
    assert loop.modified == [EventType.WRITE]
    assert conn.handle_write() is False
    assert peer.recv(100) == b""


def test_handle_error_ignored_while_connected(pair):
    conn, _, loop = pair
    conn.handle_error()
    assert conn.state is ConnectionState.CONNECTED
    assert loop.unregistered == []


def test_partial_send_is_queued_and_flushed(pair):
    conn, peer, loop = pair
    data = bytes(range(256)) * 16384
    assert conn.send_packet(data) is True
    assert loop.modified[-1] == EventType.READ | EventType.WRITE
    received = bytearray()
    while len(received) < len(data):
        received += peer.recv(65536)
        assert conn.handle_write() is True
    assert bytes(received) == data
    assert loop.modified[-1] == EventType.READ


def test_send_packets_in_order(pair):
    conn, peer, _ = pair
    assert conn.send_packets([b"$3\r\n", b"", b"bar", b"\r\n"]) is True
    expected = b"$3\r\nbar\r\n"
    received = b""
    while len(received) < len(expected):
        received += peer.recv(100)
    assert received == expected


def test_send_packets_empty_list(pair):
    conn, _, loop = pair
    assert conn.send_packets([]) is True
    assert loop.modified == []


def test_safe_send_off_loop_is_deferred(pair):
    conn, _, loop = pair
    loop.inside = False
    assert conn.safe_send(bytearray(b"late")) is True
    assert loop.executed == [(conn.send_packet, (b"late",))]


def test_safe_send_in_loop_sends_now(pair):
    conn, peer, loop = pair
    assert conn.safe_send(b"now") is True
    assert loop.executed == []
    assert peer.recv(100) == b"now"


def test_shutdown_write_signals_eof(pair):
    conn, peer, _ = pair
    conn.shutdown(ShutdownMode.WRITE)
    assert peer.recv(100) == b""


def test_notify_connected_only_when_connected(pair):
    conn, _, _ = pair
    connected = []
    conn.on_connect = connected.append
    conn.notify_connected()
    assert connected == [conn]

    fresh = Connection(FakeLoop())
    fresh.on_connect = connected.append
    fresh.notify_connected()
    assert connected == [conn]