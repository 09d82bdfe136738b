"""Deduplicating counters for server and validation errors."""

import logging
import traceback as traceback_module
from collections.abc import Iterable
from dataclasses import dataclass

from apiwatch.contracts import ServerErrorsItem, ValidationErrorsItem
from apiwatch.engine.aggregation import BoundedAggregator, check_endpoint_fields

logger = logging.getLogger(__name__)

MAX_MSG_LENGTH = 2048
MAX_TRACEBACK_BYTES = 65_536
MSG_TRUNCATION_MARKER = "... (truncated)"
TRACEBACK_TRUNCATION_MARKER = "... (truncated) ..."

ServerErrorKey = tuple[str, str, str, str, str]
ValidationErrorKey = tuple[str, str, str, tuple[str, ...], str, str]


def format_traceback(exc: BaseException) -> str:
    try:
        return "".join(traceback_module.format_exception(exc))
    except Exception:
        return ""


def truncate_message(msg: str) -> str:
    """Cap a message at MAX_MSG_LENGTH characters, marker included."""
    msg = msg.strip()
    if len(msg) <= MAX_MSG_LENGTH:
        return msg
    cutoff = MAX_MSG_LENGTH - len(MSG_TRUNCATION_MARKER)
    return msg[:cutoff] + MSG_TRUNCATION_MARKER


def truncate_traceback(tb: str) -> str:
    """Cap a traceback below MAX_TRACEBACK_BYTES, cutting at line boundaries."""
    tb = tb.strip()
    if len(tb.encode("utf-8")) <= MAX_TRACEBACK_BYTES:
        return tb
    cutoff = MAX_TRACEBACK_BYTES - len(TRACEBACK_TRUNCATION_MARKER) - 1
    kept: list[str] = []
    length = 0
    for line in tb.split("\n"):
        line_bytes = len(line.encode("utf-8")) + 1
        if length + line_bytes > cutoff:
            break
        kept.append(line)
        length += line_bytes
    kept.append(TRACEBACK_TRUNCATION_MARKER)
    return "\n".join(kept)


@dataclass
class _ServerErrorEntry:
    type: str
    msg: str
    traceback: str
    count: int = 0


class ServerErrorCounter:
    """Counts unhandled server errors, keeping one example per fingerprint."""

    def __init__(self, max_keys: int = 10_000) -> None:
        self._errors: BoundedAggregator[ServerErrorKey, _ServerErrorEntry] = (
            BoundedAggregator(max_keys=max_keys)
        )

    def record(
        self,
        consumer: str | None,
        method: str,
        path: str,
        type: str,
        message: str,
        traceback: str,
    ) -> None:
        """Count one server error. Never raises."""
        try:
            check_endpoint_fields(consumer, method, path)
            type = str(type)
            msg = truncate_message(str(message))
            key: ServerErrorKey = (
                consumer or "",
                method.upper(),
                path,
                type,
                msg,
            )
        except (AttributeError, TypeError, ValueError):
            logger.debug("Ignoring malformed server error record", exc_info=True)
            return

        def _new() -> _ServerErrorEntry:
            # Only the first occurrence pays for traceback truncation.
            return _ServerErrorEntry(
                type=type, msg=msg, traceback=truncate_traceback(str(traceback or ""))
            )

        def _apply(entry: _ServerErrorEntry) -> None:
            entry.count += 1

        self._errors.update(key, _new, _apply)

    def record_exception(
        self,
        consumer: str | None,
        method: str,
        path: str,
        exc: BaseException,
    ) -> None:
        """Count an exception object, deriving type, message and traceback."""
        self.record(
            consumer, method, path, type(exc).__name__, str(exc), format_traceback(exc)
        )

    def drain(self) -> list[ServerErrorsItem]:
        return [
            ServerErrorsItem(
                consumer=consumer or None,
                method=method,
                path=path,
                type=entry.type,
                msg=entry.msg,
                traceback=entry.traceback,
                error_count=entry.count,
            )
            for (consumer, method, path, _, _), entry in self._errors.drain().items()
        ]


class ValidationErrorCounter:
    """Counts request validation errors (e.g. FastAPI 422 details)."""

    def __init__(self, max_keys: int = 10_000) -> None:
        self._counts: BoundedAggregator[ValidationErrorKey, int] = BoundedAggregator(
            max_keys=max_keys
        )

    def record(
        self,
        consumer: str | None,
        method: str,
        path: str,
        loc: Iterable[str | int] | str,
        msg: str,
        type: str,
    ) -> None:
        try:
            check_endpoint_fields(consumer, method, path)
            if isinstance(loc, str):
                loc_parts = tuple(loc.split("."))
            else:
                loc_parts = tuple(str(part) for part in loc)
            key: ValidationErrorKey = (
                consumer or "",
                method.upper(),
                path,
                loc_parts,
                str(msg).strip(),
                str(type),
            )
        except (AttributeError, TypeError, ValueError):
            logger.debug("Ignoring malformed validation error record", exc_info=True)
            return
        self._counts.update(key, lambda: 0, lambda count: count + 1)

    def drain(self) -> list[ValidationErrorsItem]:
        return [
            ValidationErrorsItem(
                consumer=consumer or None,
                method=method,
                path=path,
                loc=list(loc),
                msg=msg,
                type=type,
                error_count=count,
            )
            for (consumer, method, path, loc, msg, type), count in self._counts.drain().items()
        ]
