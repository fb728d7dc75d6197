"""A minimal in-memory Redis server answering PING, GET and SET."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from typing import Any, Sequence

from .application import Application
from .connection import Connection
from .redis_protocol import ParseResult, Protocol
from .sockets import SocketAddr, convert_ip

__all__ = ["RedisServerContext", "process_inline_command", "format_bulk", "main"]

logger = logging.getLogger("reactorkit.redis_server")

CRLF = b"\r\n"
_PONG = b"+PONG\r\n"
_OK = b"+OK\r\n"
_NIL = b"$-1\r\n"
_UNKNOWN = b"-ERR Unknown command\r\n"
_WRONG_ARGS = b"-ERR wrong number of arguments\r\n"

_thread_db = threading.local()


def process_inline_command(data: bytes) -> tuple[int, list[bytes]]:
    """Split a blank-separated inline command ended by CRLF.

    Returns the bytes consumed and the words, or ``(0, [])`` if no CRLF
    has arrived yet.
    """
    if len(data) < 2:
        return 0, []
    params: list[bytes] = []
    word = bytearray()
    for i in range(len(data) - 1):
        ch = data[i]
        if ch == ord("\r") and data[i + 1] == ord("\n"):
            if word:
                params.append(bytes(word))
            return i + 2, params
        if ch in b" \t":
            if word:
                params.append(bytes(word))
                word.clear()
        else:
            word.append(ch)
    return 0, []


def format_bulk(value: bytes) -> bytes:
    """Encode ``value`` as a bulk string reply."""
    return b"$%d\r\n" % len(value) + value + CRLF


def _shared_db() -> dict[bytes, bytes]:
    db = getattr(_thread_db, "db", None)
    if db is None:
        db = _thread_db.db = {}
    return db


class RedisServerContext:
    """Per-connection request handling against a key-value store.

    Without an explicit ``db`` every context on the same thread shares one.
    """

    def __init__(self, conn: Any, db: dict[bytes, bytes] | None = None) -> None:
        self._conn = conn
        self._db = db if db is not None else _shared_db()
        self._proto = Protocol()

    def on_recv(self, conn: Any, data: bytes) -> int:
        """Handle at most one request; return the bytes consumed."""
        data = bytes(data)
        result, pos = self._proto.parse_request(data, 0)
        if result is ParseResult.ERROR:
            if not self._proto.is_initial_state():
                logger.error("ParseError for %r", data)
                self._conn.active_close()
                return 0
            consumed, params = process_inline_command(data[pos:])
            if consumed == 0:
                return 0
            pos += consumed
            self._proto.params = params
            result = ParseResult.OK

        if result is not ParseResult.OK:
            return pos

        params = self._proto.params
        if not params:
            self._proto.reset()
            return pos

        reply = self._execute(params)
        self._proto.reset()
        self._conn.send_packet(reply)
        return pos

    def _execute(self, params: list[bytes]) -> bytes:
        cmd = params[0].lower()
        if cmd == b"ping":
            return _PONG
        if cmd == b"get":
            if len(params) < 2:
                return _WRONG_ARGS
            value = self._db.get(params[1])
            return _NIL if value is None else format_bulk(value)
        if cmd == b"set":
            if len(params) < 3:
                return _WRONG_ARGS
            self._db[params[1]] = params[2]
            return _OK
        logger.error("Unknown cmd %r", cmd)
        return _UNKNOWN


def _on_new_connection(conn: Connection) -> None:
    print("OnNewConnection", conn.fileno())
    ctx = RedisServerContext(conn)
    conn.batch_send = True
    conn.on_connect = lambda c: print("RedisContext.OnConnect", c.fileno())
    conn.on_message = ctx.on_recv


def _make_init(app: Application):
    def init(argv: Sequence[str]) -> bool:
        parser = argparse.ArgumentParser(prog="redis-server-lite", add_help=False)
        parser.add_argument("-p", dest="port", type=int, default=6379)
        try:
            args = parser.parse_args(list(argv))
        except SystemExit:
            return False
        app.listen(SocketAddr(convert_ip("loopback"), args.port), _on_new_connection)
        return True

    return init


def main(argv: Sequence[str] | None = None) -> int:
    """Serve on the loopback address; ``-p`` picks the port."""
    if argv is None:
        argv = sys.argv[1:]
    logging.basicConfig(level=logging.INFO)
    app = Application.instance()
    app.on_init = _make_init(app)
    app.run(argv)
    return 0