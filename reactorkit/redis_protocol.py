"""Incremental parser for requests in the Redis multi-bulk protocol.

The grammar is::

    request -> multi strlist
    multi   -> '*' number CRLF
    strlist -> str strlist | empty
    str     -> strlen strval
    strlen  -> '$' number CRLF
    strval  -> string CRLF

Positions index into the buffer handed in; bytes before the returned
position have been consumed and need not be handed in again.
"""

from __future__ import annotations

from enum import Enum

__all__ = ["ParseResult", "Protocol", "parse_int_until_crlf"]

_CR = ord("\r")
_LF = ord("\n")


class ParseResult(Enum):
    OK = "ok"
    WAIT = "wait"
    ERROR = "error"


def parse_int_until_crlf(data: bytes, pos: int = 0) -> tuple[ParseResult, int | None, int]:
    """Parse a signed decimal terminated by CRLF at ``data[pos:]``.

    Returns the result, the value (None unless OK) and the position after
    the CRLF (unchanged unless OK).
    """
    n = len(data) - pos
    if n < 3:
        return ParseResult.WAIT, None, pos

    i = 0
    negative = False
    if data[pos] == ord("-"):
        negative = True
        i = 1
    elif data[pos] == ord("+"):
        i = 1

    value = 0
    while i < n:
        ch = data[pos + i]
        if ord("0") <= ch <= ord("9"):
            value = value * 10 + ch - ord("0")
            i += 1
            continue
        if ch != _CR or (i + 1 < n and data[pos + i + 1] != _LF):
            return ParseResult.ERROR, None, pos
        if i + 1 == n:
            return ParseResult.WAIT, None, pos
        break
    else:
        return ParseResult.WAIT, None, pos

    return ParseResult.OK, -value if negative else value, pos + i + 2


class Protocol:
    """Parser state for one request, kept across partial reads."""

    def __init__(self) -> None:
        self._multi = -1
        self._param_len = -1
        self.params: list[bytes] = []

    def __repr__(self) -> str:
        return f"Protocol(multi={self._multi}, params={self.params!r})"

    def reset(self) -> None:
        """Forget the current request and start over."""
        self._multi = -1
        self._param_len = -1
        self.params = []

    def is_initial_state(self) -> bool:
        return self._multi == -1

    def parse_request(self, data: bytes, pos: int = 0) -> tuple[ParseResult, int]:
        """Parse from ``pos``; return the result and the position reached."""
        if self._multi == -1:
            result, multi, new_pos = self._parse_prefixed_int(data, pos, ord("*"))
            if result is ParseResult.OK:
                self._multi = multi
            if result is ParseResult.ERROR or (result is ParseResult.OK and multi < -1):
                return ParseResult.ERROR, pos
            if result is not ParseResult.OK:
                return ParseResult.WAIT, pos
            pos = new_pos
        return self._parse_strlist(data, pos)

    @staticmethod
    def _parse_prefixed_int(data: bytes, pos: int, prefix: int) -> tuple[ParseResult, int | None, int]:
        if len(data) - pos < 3:
            return ParseResult.WAIT, None, pos
        if data[pos] != prefix:
            return ParseResult.ERROR, None, pos
        result, value, new_pos = parse_int_until_crlf(data, pos + 1)
        if result is not ParseResult.OK:
            return result, None, pos
        return result, value, new_pos

    def _parse_strlist(self, data: bytes, pos: int) -> tuple[ParseResult, int]:
        while len(self.params) < self._multi:
            result, value, pos = self._parse_str(data, pos)
            if result is not ParseResult.OK:
                return result, pos
            self.params.append(value)
        return ParseResult.OK, pos

    def _parse_str(self, data: bytes, pos: int) -> tuple[ParseResult, bytes | None, int]:
        if self._param_len == -1:
            result, length, new_pos = self._parse_prefixed_int(data, pos, ord("$"))
            if result is ParseResult.OK:
                self._param_len = length
                pos = new_pos
            if result is ParseResult.ERROR or (result is ParseResult.OK and length < -1):
                return ParseResult.ERROR, None, pos
            if result is not ParseResult.OK:
                return ParseResult.WAIT, None, pos
        return self._parse_strval(data, pos)

    def _parse_strval(self, data: bytes, pos: int) -> tuple[ParseResult, bytes | None, int]:
        length = self._param_len
        if length < 0:
            return ParseResult.ERROR, None, pos
        if len(data) - pos < length + 2:
            return ParseResult.WAIT, None, pos
        tail = pos + length
        if data[tail] != _CR or data[tail + 1] != _LF:
            return ParseResult.ERROR, None, pos
        value = bytes(data[pos:tail])
        self._param_len = -1
        return ParseResult.OK, value, tail + 2