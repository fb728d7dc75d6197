import pytest

from reactorkit.redis_protocol import ParseResult, Protocol, parse_int_until_crlf


@pytest.mark.parametrize(
    "data, value",
    [(b"123\r\n", 123), (b"-5\r\n", -5), (b"+7\r\n", 7)],
)
def test_parse_int_ok(data, value):
    assert parse_int_until_crlf(data, 0) == (ParseResult.OK, value, len(data))


def test_parse_int_from_offset():
    data = b"xx42\r\nrest"
    assert parse_int_until_crlf(data, 2) == (ParseResult.OK, 42, len(b"xx42\r\n"))


@pytest.mark.parametrize("data", [b"12", b"12\r", b"123"])
def test_parse_int_waits(data):
    assert parse_int_until_crlf(data, 0) == (ParseResult.WAIT, None, 0)


@pytest.mark.parametrize("data", [b"1x\r\n", b"12\rx"])
def test_parse_int_errors(data):
    assert parse_int_until_crlf(data, 0)[0] is ParseResult.ERROR


REQUEST = b"*3\r\n$3\r\nSET\r\n$1\r\nk\r\n$1\r\nv\r\n"


def test_full_request():
    proto = Protocol()
    result, pos = proto.parse_request(REQUEST, 0)
    assert result is ParseResult.OK
    assert pos == len(REQUEST)
    assert proto.params == [b"SET", b"k", b"v"]


def test_byte_by_byte_with_consumption():
    proto = Protocol()
    buf = b""
    result = None
    for i in range(len(REQUEST)):
        buf += REQUEST[i:i + 1]
        result, pos = proto.parse_request(buf, 0)
        buf = buf[pos:]
        if result is ParseResult.OK:
            break
    assert result is ParseResult.OK
    assert buf == b""
    assert proto.params == [b"SET", b"k", b"v"]


def test_partial_multi_keeps_initial_state():
    proto = Protocol()
    assert proto.parse_request(b"*3\r", 0) == (ParseResult.WAIT, 0)
    assert proto.is_initial_state() is True


def test_not_multibulk_is_error_in_initial_state():
    proto = Protocol()
    assert proto.parse_request(b"PING\r\n", 0)[0] is ParseResult.ERROR
    assert proto.is_initial_state() is True


def test_negative_multi_is_error():
    proto = Protocol()
    assert proto.parse_request(b"*-2\r\n", 0)[0] is ParseResult.ERROR


def test_null_bulk_argument_is_error():
    proto = Protocol()
    assert proto.parse_request(b"*1\r\n$-1\r\n", 0)[0] is ParseResult.ERROR
    assert proto.is_initial_state() is False


def test_bad_terminator_is_error():
    proto = Protocol()
    assert proto.parse_request(b"*1\r\n$3\r\nabcXY", 0)[0] is ParseResult.ERROR


def test_reset_restores_initial_state():
    proto = Protocol()
    proto.parse_request(REQUEST, 0)
    assert proto.is_initial_state() is False
    proto.reset()
    assert proto.is_initial_state() is True
    assert proto.params == []