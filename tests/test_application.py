import socket

import pytest

from reactorkit.application import LOGO, Application
from reactorkit.sockets import SocketAddr


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class ConnectionRecorder:
    """Collects which side saw a connection and exits once both have."""

    def __init__(self, app):
        self.app = app
        self.events = set()

    def _record(self, name):
        self.events.add(name)
        if self.events == {"accepted", "connected"}:
            self.app.exit()

    def accepted(self, conn):
        self._record("accepted")

    def connected(self, conn):
        self._record("connected")

    def failed(self, loop, peer):
        self.app.exit()


def test_num_workers_counts_base_loop():
    with Application() as app:
        assert app.num_workers() == 1
        app.set_num_workers(3)
        assert app.num_workers() == 4


def test_set_workers_after_exit_raises():
    with Application() as app:
        app.exit()
        with pytest.raises(RuntimeError):
            app.set_num_workers(2)


def test_exit_marks_application():
    with Application() as app:
        assert app.is_exit() is False
        app.exit()
        app.exit()
        assert app.is_exit() is True


def test_next_loop_is_base_without_workers():
    with Application() as app:
        assert app.next_loop() is app.base_loop()


def test_run_stops_when_init_fails():
    with Application() as app:
        seen = []
        app.on_init = lambda argv: seen.append(list(argv)) or False
        app.on_exit = lambda: seen.append("exit")
        app.run(["prog", "-x"])
        assert seen == [["prog", "-x"], "exit"]
        assert app.is_exit() is False


def test_run_until_exit():
    with Application() as app:
        calls = []

        def on_init(argv):
            app.base_loop().schedule_after(0.01, app.exit)
            return True

        app.on_init = on_init
        app.on_exit = lambda: calls.append("exit")
        app.run(["prog"])
        assert calls == ["exit"]
        assert app.is_exit() is True


def test_listen_success_reports_address():
    port = _free_port()
    with Application() as app:
        results = []
        app.listen(("127.0.0.1", port), None, lambda ok, addr: results.append((ok, addr.port)))
        assert results == [(True, port)]
        assert len(app.base_loop()) == 1


def test_listen_failure_reported():
    with Application() as app:
        results = []
        app.listen(SocketAddr(), None, lambda ok, addr: results.append(ok))
        assert results == [False]
        assert app.is_exit() is False


def test_listen_failure_default_callback_exits():
    with Application() as app:
        app.listen(SocketAddr(), None)
        assert app.is_exit() is True


def test_listen_and_connect_round_trip():
    port = _free_port()
    with Application() as app:
        recorder = ConnectionRecorder(app)
        app.listen(("127.0.0.1", port), recorder.accepted)
        app.connect(("127.0.0.1", port), recorder.connected, recorder.failed)
        app.base_loop().schedule_after(3.0, app.exit)
        app.run(["prog"])
        assert recorder.events == {"accepted", "connected"}
        assert app.is_exit() is True


def test_instance_is_singleton():
    first = Application.instance()
    try:
        assert Application.instance() is first
    finally:
        first.base_loop().close()


def test_logo_has_four_lines():
    assert len(LOGO.splitlines()) == 4