"""Per-request capture of application log records.

``capture_logs()`` makes a fresh list current for the enclosing logical
execution. Because the list lives in a ContextVar it follows asyncio tasks
spawned while handling the request (they copy the context) and code run via
``contextvars.copy_context().run``, but it is never visible to unrelated
concurrent requests.

Example:
    with capture_logs() as records:
        await call_next(request)
    request_logger.log_request(request_info, response_info, logs=records)
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from apiwatch.types import LogRecord

MAX_CAPTURED_RECORDS = 1000

# ContextVar holding the records of the request currently being handled
_captured_logs: ContextVar[list[LogRecord] | None] = ContextVar(
    "apiwatch_captured_logs", default=None
)


@contextmanager
def capture_logs() -> Iterator[list[LogRecord]]:
    """Collect log records emitted inside the block into the yielded list."""
    records: list[LogRecord] = []
    token = _captured_logs.set(records)
    try:
        yield records
    finally:
        _captured_logs.reset(token)


def is_capturing() -> bool:
    return _captured_logs.get() is not None


def append_log(record: LogRecord) -> bool:
    """Attach a record to the current request, if any.

    Returns False when no capture scope is active or the scope is full;
    overflowing records are dropped rather than blocking the caller.
    """
    records = _captured_logs.get()
    if records is None or len(records) >= MAX_CAPTURED_RECORDS:
        return False
    records.append(record)
    return True


class CaptureLogHandler(logging.Handler):
    """Logging handler that copies records into the current capture scope."""

    def __init__(self, level: int = logging.NOTSET) -> None:
        super().__init__(level)

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == "apiwatch" or record.name.startswith("apiwatch."):
            return
        if _captured_logs.get() is None:
            return
        try:
            message = self.format(record) if self.formatter else record.getMessage()
            append_log(
                LogRecord(
                    message=message,
                    level=record.levelname,
                    logger=record.name,
                    timestamp=record.created,
                )
            )
        except Exception:
            self.handleError(record)


_installed_handler: CaptureLogHandler | None = None


def install_capture_handler(target: logging.Logger | None = None) -> CaptureLogHandler:
    """Attach a single CaptureLogHandler to ``target`` (the root logger by default)."""
    global _installed_handler
    target = target or logging.getLogger()
    if _installed_handler is None:
        _installed_handler = CaptureLogHandler()
    if _installed_handler not in target.handlers:
        target.addHandler(_installed_handler)
    return _installed_handler


def uninstall_capture_handler(target: logging.Logger | None = None) -> None:
    global _installed_handler
    target = target or logging.getLogger()
    if _installed_handler is not None:
        target.removeHandler(_installed_handler)
        _installed_handler = None
