from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator

import pytest
from apiwatch.sdk.log_capture import (
    MAX_CAPTURED_RECORDS,
    append_log,
    capture_logs,
    install_capture_handler,
    is_capturing,
    uninstall_capture_handler,
)
from apiwatch.types import LogRecord


@pytest.fixture
def app_logger() -> Iterator[logging.Logger]:
    logger = logging.getLogger("tests.app")
    logger.setLevel(logging.INFO)
    install_capture_handler(logger)
    try:
        yield logger
    finally:
        uninstall_capture_handler(logger)


def test_records_inside_scope_are_captured(app_logger: logging.Logger) -> None:
    app_logger.info("before")
    with capture_logs() as records:
        app_logger.info("handling %s", "request")
        app_logger.warning("careful")
    app_logger.info("after")

    assert [(r.level, r.message) for r in records] == [
        ("INFO", "handling request"),
        ("WARNING", "careful"),
    ]
    assert records[0].logger == "tests.app"
    assert not is_capturing()


def test_own_loggers_are_never_captured(app_logger: logging.Logger) -> None:
    handler = install_capture_handler(app_logger)
    internal = logging.makeLogRecord(
        {"name": "apiwatch.engine.request_log", "msg": "internal", "levelname": "WARNING"}
    )
    with capture_logs() as records:
        handler.handle(internal)
        app_logger.warning("app")

    assert [r.message for r in records] == ["app"]


def test_captured_records_are_capped() -> None:
    with capture_logs() as records:
        for i in range(MAX_CAPTURED_RECORDS + 5):
            append_log(LogRecord(message=str(i)))
        assert append_log(LogRecord(message="overflow")) is False

    assert len(records) == MAX_CAPTURED_RECORDS


def test_append_outside_scope_is_ignored() -> None:
    assert append_log(LogRecord(message="nowhere")) is False


@pytest.mark.asyncio
async def test_concurrent_tasks_keep_separate_records(app_logger: logging.Logger) -> None:
    async def _handle(name: str) -> list[str]:
        with capture_logs() as records:
            for i in range(3):
                app_logger.info("%s-%d", name, i)
                await asyncio.sleep(0)
        return [r.message for r in records]

    first, second = await asyncio.gather(_handle("a"), _handle("b"))

    assert first == ["a-0", "a-1", "a-2"]
    assert second == ["b-0", "b-1", "b-2"]


@pytest.mark.asyncio
async def test_spawned_tasks_inherit_scope(app_logger: logging.Logger) -> None:
    async def _child() -> None:
        app_logger.info("from child")

    with capture_logs() as records:
        await asyncio.create_task(_child())

    assert [r.message for r in records] == ["from child"]
