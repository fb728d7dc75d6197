"""A small Redis client whose commands suspend a coroutine until the reply arrives."""

from __future__ import annotations

import functools
import logging
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from .application import Application
from .connection import Connection
from .coroutine import Coroutine, create_coroutine, send, yield_value
from .event_loop import EventLoop
from .redis_client import ResponseParser, build_redis_request
from .sockets import SocketAddr

__all__ = ["RedisCoroutineContext", "main"]

logger = logging.getLogger("reactorkit.redis_coroutine_client")


@dataclass
class _Request:
    args: tuple[str, ...]
    coroutine: Coroutine | None


class RedisCoroutineContext:
    """Sends commands over ``conn`` and resumes the issuing coroutine with each reply."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._parser = ResponseParser()
        self._pending: deque[_Request] = deque()
        self._current: Coroutine | None = None

    def __len__(self) -> int:
        return len(self._pending)

    def start_coroutine(self, func: Callable[..., Any], *args: Any) -> bool:
        """Run ``func(*args)`` as a coroutine up to its first yield.

        If it yields nothing (its request could not be sent), it is
        resumed once more so it can finish, and False is returned.
        """
        self._current = create_coroutine(func, *args)
        result = send(self._current)
        if result is None:
            send(self._current)
            return False
        return True

    def get(self, key: str) -> bool | None:
        """Send GET ``key``; True if sent, None if the connection refused it.

        Yield the result to wait for the reply string.
        """
        if not self._conn.send_packet(build_redis_request("get", key)):
            return None
        self._pending.append(_Request(("get", key), self._current))
        return True

    def on_recv(self, conn: Any, data: bytes) -> int:
        """Parse one reply line; return the bytes consumed."""
        consumed, response = self._parser.feed(data)
        if response is not None:
            if not self._pending:
                logger.error("reply %r without a pending request", response)
            else:
                request = self._pending.popleft()
                logger.info("--- Request: [ %s ] --- Response: %s",
                            " ".join(request.args), response[1])
                if request.coroutine is not None:
                    send(request.coroutine, response[1])
        return consumed


def _get_some_redis_key(ctx: RedisCoroutineContext, key: str) -> None:
    print("Coroutine is primed")
    rsp = yield_value(ctx.get(key))
    print("Coroutine is resumed")
    if rsp:
        print(f"Value for key {key} is {rsp}")
    else:
        print("got rsp failed", file=sys.stderr)


def _on_connect(ctx: RedisCoroutineContext, conn: Connection) -> None:
    print("RedisContext.OnConnect", conn.fileno())
    if ctx.start_coroutine(_get_some_redis_key, ctx, "name"):
        print("StartCoroutine success")
    else:
        print("StartCoroutine failed", file=sys.stderr)


def _on_new_connection(conn: Connection) -> None:
    print("OnNewConnection", conn.fileno())
    ctx = RedisCoroutineContext(conn)
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


def main(argv: Sequence[str] | None = None) -> int:
    """Fetch the key ``name`` from a Redis server on loopback port 6379."""
    if argv is None:
        argv = sys.argv[1:]
    logging.basicConfig(level=logging.INFO)
    app = Application.instance()
    app.connect(("loopback", 6379), _on_new_connection, functools.partial(_on_conn_fail, 5))
    app.run(argv)
    return 0