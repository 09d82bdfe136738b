from __future__ import annotations

from apiwatch.sdk.body_capture import BodyCapture


def test_body_exactly_at_limit_is_kept() -> None:
    capture = BodyCapture(capture_body=True, max_body_size=10)
    capture.feed(b"12345")
    capture.feed(b"67890")
    capture.finish()

    assert capture.body == b"1234567890"
    assert capture.size == 10


def test_body_over_limit_is_omitted_but_sized() -> None:
    capture = BodyCapture(capture_body=True, max_body_size=10)
    capture.feed(b"12345")
    capture.feed(b"678901")
    capture.feed(b"more")
    capture.finish()

    assert capture.body is None
    assert capture.limit_exceeded
    assert capture.size == 15


def test_incomplete_body_is_not_reported() -> None:
    capture = BodyCapture(capture_body=True)
    capture.feed(b"partial")

    assert capture.body is None


def test_disabled_capture_still_counts_size() -> None:
    capture = BodyCapture(capture_body=False)
    capture.feed(b"abc")
    capture.finish()

    assert capture.body is None
    assert capture.size == 3


def test_empty_body_is_empty_bytes() -> None:
    capture = BodyCapture(capture_body=True)
    capture.feed(b"")
    capture.finish()

    assert capture.body == b""
    assert capture.size == 0
