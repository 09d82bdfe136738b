from __future__ import annotations

from apiwatch.engine.errors import (
    MAX_MSG_LENGTH,
    MAX_TRACEBACK_BYTES,
    MSG_TRUNCATION_MARKER,
    TRACEBACK_TRUNCATION_MARKER,
    ServerErrorCounter,
    ValidationErrorCounter,
    truncate_message,
    truncate_traceback,
)


def _raise(message: str) -> ValueError:
    try:
        raise ValueError(message)
    except ValueError as e:
        return e


def test_long_message_is_truncated_to_exact_limit() -> None:
    truncated = truncate_message("x" * 3000)

    assert len(truncated) == MAX_MSG_LENGTH
    assert truncated.endswith(MSG_TRUNCATION_MARKER)


def test_short_message_is_only_stripped() -> None:
    assert truncate_message("  boom \n") == "boom"


def test_long_traceback_is_cut_at_line_boundary() -> None:
    lines = [f"line {i:05d} " + "y" * 90 for i in range(2_000)]

    truncated = truncate_traceback("\n".join(lines))

    assert len(truncated.encode("utf-8")) <= MAX_TRACEBACK_BYTES
    kept = truncated.split("\n")
    assert kept[-1] == TRACEBACK_TRUNCATION_MARKER
    assert all(line in lines for line in kept[:-1])


def test_repeated_exception_is_counted_once_per_fingerprint() -> None:
    counter = ServerErrorCounter()
    for _ in range(3):
        counter.record_exception(None, "GET", "/boom", _raise("boom"))

    items = counter.drain()

    assert len(items) == 1
    assert items[0].type == "ValueError"
    assert items[0].msg == "boom"
    assert items[0].error_count == 3
    assert "ValueError: boom" in items[0].traceback
    assert counter.drain() == []


def test_first_traceback_is_kept_as_example() -> None:
    counter = ServerErrorCounter()
    counter.record("c1", "post", "/items", "KeyError", "'id'", "first")
    counter.record("c1", "POST", "/items", "KeyError", "'id'", "second")

    [item] = counter.drain()

    assert item.consumer == "c1"
    assert item.method == "POST"
    assert item.traceback == "first"
    assert item.error_count == 2


def test_different_messages_are_separate_errors() -> None:
    counter = ServerErrorCounter()
    counter.record_exception(None, "GET", "/boom", _raise("a"))
    counter.record_exception(None, "GET", "/boom", _raise("b"))

    assert sorted(i.msg for i in counter.drain()) == ["a", "b"]


def test_validation_error_locations_are_normalized() -> None:
    counter = ValidationErrorCounter()
    counter.record(None, "POST", "/items", "body.name", "Field required", "missing")
    counter.record(None, "POST", "/items", ["body", "name"], "Field required", "missing")
    counter.record(None, "POST", "/items", ("query", 0), "Invalid", "int_parsing")

    items = {tuple(i.loc): i.error_count for i in counter.drain()}

    assert items == {("body", "name"): 2, ("query", "0"): 1}


def test_non_string_error_type_is_coerced() -> None:
    counter = ServerErrorCounter()
    counter.record(None, "GET", "/ok", None, "boom", "tb")  # type: ignore[arg-type]

    [item] = counter.drain()

    assert (item.type, item.msg, item.error_count) == ("None", "boom", 1)


def test_malformed_error_records_are_ignored() -> None:
    server_errors = ServerErrorCounter()
    server_errors.record(None, "GET", 123, "ValueError", "boom", "tb")  # type: ignore[arg-type]
    server_errors.record(7, "GET", "/ok", "ValueError", "boom", "tb")  # type: ignore[arg-type]
    validation_errors = ValidationErrorCounter()
    validation_errors.record(None, "POST", None, "body.name", "bad", "missing")  # type: ignore[arg-type]
    validation_errors.record(7, "POST", "/items", "body.name", "bad", "missing")  # type: ignore[arg-type]
    validation_errors.record(None, "POST", "/items", "body.name", "bad", "missing")

    assert server_errors.drain() == []
    assert [i.path for i in validation_errors.drain()] == ["/items"]
