import pytest

from reactorkit.coroutine import (
    Coroutine,
    CoroutineError,
    CoroutineState,
    create_coroutine,
    current_id,
    resume,
    send,
    yield_value,
)


def test_send_and_yield_round_trip():
    def body(first):
        received = yield_value(first)
        return received + "!"

    crt = create_coroutine(body, "ping")
    assert crt.state is CoroutineState.INIT
    assert resume(crt) == "ping"
    assert crt.state is CoroutineState.RUNNING
    assert send(crt, "pong") == "pong!"
    assert crt.state is CoroutineState.FINISH


def test_multiple_yields_in_order():
    def body(items):
        for item in items:
            yield_value(item)
        return "done"

    crt = create_coroutine(body, ["a", "b", "c"])
    results = [resume(crt) for _ in range(4)]
    assert results == ["a", "b", "c", "done"]


def test_yield_from_nested_call():
    def inner(value):
        return yield_value(value)

    def body():
        return inner("deep")

    crt = create_coroutine(body)
    assert resume(crt) == "deep"
    assert send(crt, "back") == "back"


def test_send_to_finished_coroutine_raises():
    crt = create_coroutine(lambda: "x")
    assert resume(crt) == "x"
    with pytest.raises(CoroutineError):
        resume(crt)


def test_send_value_to_new_coroutine_raises():
    crt = create_coroutine(lambda: None)
    with pytest.raises(CoroutineError):
        send(crt, "value")
    assert crt.state is CoroutineState.INIT


def test_current_id_inside_and_outside():
    crt = create_coroutine(current_id)
    assert resume(crt) == crt.id
    assert current_id() == 1


def test_ids_are_increasing():
    first = Coroutine()
    second = Coroutine()
    assert second.id > first.id > 1


def test_yield_outside_coroutine_raises():
    with pytest.raises(CoroutineError):
        yield_value("nothing")


def test_exception_propagates_to_resumer():
    def body():
        raise ValueError("boom")

    crt = create_coroutine(body)
    with pytest.raises(ValueError, match="boom"):
        resume(crt)
    assert crt.state is CoroutineState.FINISH
    assert current_id() == 1


def test_empty_coroutine_finishes():
    crt = Coroutine()
    assert resume(crt) is None
    assert crt.state is CoroutineState.FINISH


def test_keyword_arguments_are_bound():
    def body(a, *, b):
        return [a, b]

    crt = create_coroutine(body, "x", b="y")
    assert resume(crt) == ["x", "y"]