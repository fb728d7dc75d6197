"""A small Redis client whose commands return futures.

Only the replies ``+OK``, ``-ERR`` and ``$len`` bulk strings are
understood; requests go out in the inline protocol.
"""

from __future__ import annotations

import argparse
import functools
import logging
import sys
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from .application import Application
from .connection import Connection
from .event_loop import EventLoop
from .sockets import SocketAddr

__all__ = [
    "ResponseType",
    "ResponseParser",
    "RedisFutureContext",
    "build_redis_request",
    "search_crlf",
    "format_response",
    "main",
]

logger = logging.getLogger("reactorkit.redis_client")

CRLF = b"\r\n"
NIL = "(nil)"


class ResponseType(Enum):
    NONE = "none"
    FINE = "fine"
    ERROR = "error"
    STRING = "string"


_PREFIXES = {
    ord("+"): ResponseType.FINE,
    ord("-"): ResponseType.ERROR,
    ord("$"): ResponseType.STRING,
}

_LABELS = {
    ResponseType.ERROR: "Error",
    ResponseType.FINE: "Fine",
    ResponseType.STRING: "String",
}

Response = tuple[ResponseType, str]


def build_redis_request(*args: str | bytes) -> bytes:
    """Join the words of a command with blanks and end it with CRLF."""
    if not args:
        raise ValueError("a request needs at least one word")
    words = [a.encode() if isinstance(a, str) else bytes(a) for a in args]
    return b" ".join(words) + CRLF


def search_crlf(data: bytes) -> int:
    """Index of the first CRLF in ``data``, or -1 if there is none."""
    return bytes(data).find(CRLF)


def format_response(info: Response) -> str:
    """Render a response the way the examples print it."""
    kind, content = info
    label = _LABELS.get(kind)
    if label is None:
        raise ValueError(f"no response of type {kind}")
    return f"({label}): {content}"


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class ResponseParser:
    """Parses one reply line per :meth:`feed`, keeping state between calls."""

    def __init__(self) -> None:
        self._type = ResponseType.NONE
        self._length = -1

    def reset(self) -> None:
        """Forget any partly parsed reply."""
        self._type = ResponseType.NONE
        self._length = -1

    def feed(self, data: bytes) -> tuple[int, Response | None]:
        """Consume at most one line of ``data``.

        Returns the bytes consumed (0 while no complete line has arrived)
        and the finished response, if this line completed one.
        """
        data = bytes(data)
        if not data:
            return 0, None

        if self._type is ResponseType.NONE:
            kind = _PREFIXES.get(data[0])
            if kind is None:
                raise ValueError(f"wrong type {data[:1]!r}")
            self._type = kind

        end = search_crlf(data)
        if end < 0:
            return 0, None

        response: Response | None = None
        if self._type in (ResponseType.FINE, ResponseType.ERROR):
            response = (self._type, _decode(data[1:end]))
        elif self._length == -1:
            self._length = int(data[1:end])
            if self._length == -1:
                response = (ResponseType.STRING, NIL)
        else:
            raw = data[:end]
            if len(raw) != self._length:
                self.reset()
                raise ValueError(f"bulk length {len(raw)} does not match the announced length")
            response = (ResponseType.STRING, _decode(raw))

        if response is not None:
            self.reset()
        return end + 2, response


@dataclass
class _Request:
    args: tuple[str, ...]
    future: Future = field(default_factory=Future)


class RedisFutureContext:
    """Sends commands over ``conn`` and resolves their futures as replies arrive."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._parser = ResponseParser()
        self._pending: deque[_Request] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    def _issue(self, *args: str) -> Future:
        self._conn.send_packet(build_redis_request(*args))
        request = _Request(args)
        self._pending.append(request)
        return request.future

    def get(self, key: str) -> Future:
        """GET ``key``; the future resolves to a ``(ResponseType, str)`` pair."""
        return self._issue("get", key)

    def set(self, key: str, value: str) -> Future:
        """SET ``key`` to ``value``; the future resolves to a ``(ResponseType, str)`` pair."""
        return self._issue("set", key, value)

    def on_recv(self, conn: Any, data: bytes) -> int:
        """Parse one reply line; return the bytes consumed."""
        consumed, response = self._parser.feed(data)
        if response is not None:
            if not self._pending:
                logger.error("reply %r without a pending request", response)
            else:
                request = self._pending.popleft()
                logger.info("--- Request: [ %s ] --- Response: %s",
                            " ".join(request.args), format_response(response))
                request.future.set_result(response)
        return consumed


def _print_result(future: Future) -> None:
    print(format_response(future.result()))


def _when_all(futures: Sequence[Future], callback: Callable[[list[Response]], None]) -> None:
    lock = threading.Lock()
    remaining = len(futures)

    def done(_: Future) -> None:
        nonlocal remaining
        with lock:
            remaining -= 1
            last = remaining == 0
        if last:
            callback([f.result() for f in futures])

    for future in futures:
        future.add_done_callback(done)


def _get_and_set_name(ctx: RedisFutureContext) -> None:
    def after_set(future: Future) -> None:
        _print_result(future)
        ctx.get("name").add_done_callback(_print_result)

    ctx.set("name", "bertyoung").add_done_callback(after_set)


def _wait_multi_requests(ctx: RedisFutureContext) -> None:
    def report(results: list[Response]) -> None:
        print("All requests returned:")
        for result in results:
            print(format_response(result))

    _when_all([ctx.set("city", "shenzhen"), ctx.get("city")], report)


def _exit_if_pending(future: Future) -> None:
    if not future.done():
        print("OnTimeout request, now exit test")
        Application.instance().exit()


def _on_connect(ctx: RedisFutureContext, conn: Connection) -> None:
    print("RedisContext.OnConnect", conn.fileno())
    future = ctx.set("item", "diamond")
    future.add_done_callback(_print_result)
    loop = EventLoop.current()
    if loop is not None:
        loop.schedule_after(3.0, _exit_if_pending, future)
    _get_and_set_name(ctx)
    _wait_multi_requests(ctx)


def _on_new_connection(conn: Connection) -> None:
    print("OnNewConnection", conn.fileno())
    ctx = RedisFutureContext(conn)
    conn.on_connect = functools.partial(_on_connect, ctx)
    conn.on_message = ctx.on_recv


def _on_conn_fail(max_tries: int, loop: EventLoop, peer: SocketAddr) -> None:
    print("OnConnFail from", peer.port)
    max_tries -= 1
    if max_tries <= 0:
        print("ReConnect failed, exit app", file=sys.stderr)
        Application.instance().exit()

    def reconnect() -> None:
        loop.connect(peer, _on_new_connection, functools.partial(_on_conn_fail, max_tries))

    loop.schedule_after(2.0, reconnect)


def _make_init(app: Application) -> Callable[[Sequence[str]], bool]:
    def init(argv: Sequence[str]) -> bool:
        parser = argparse.ArgumentParser(prog="redis-client-future-lite", add_help=False)
        parser.add_argument("-p", dest="port", type=int, default=6379)
        parser.add_argument("-t", dest="tries", type=int, default=5)
        try:
            args = parser.parse_args(list(argv))
        except SystemExit:
            return False
        app.connect(("loopback", args.port), _on_new_connection,
                    functools.partial(_on_conn_fail, args.tries))
        return True

    return init


def main(argv: Sequence[str] | None = None) -> int:
    """Connect to a Redis server on loopback; ``-p`` port, ``-t`` connect attempts."""
    if argv is None:
        argv = sys.argv[1:]
    logging.basicConfig(level=logging.INFO)
    app = Application.instance()
    app.on_init = _make_init(app)
    app.run(argv)
    return 0