"""apiwatch - in-process API telemetry agent."""

from apiwatch._version import __version__
from apiwatch.engine import Consumer, KeyInfo, RequestLoggingConfig
from apiwatch.sdk import (
    ApiwatchMiddleware,
    Client,
    capture_logs,
    get_client,
    init_client,
    reset_client,
    set_consumer,
)
from apiwatch.types import LogRecord, RequestInfo, ResponseInfo

__all__ = [
    "ApiwatchMiddleware",
    "Client",
    "Consumer",
    "KeyInfo",
    "LogRecord",
    "RequestInfo",
    "RequestLoggingConfig",
    "ResponseInfo",
    "__version__",
    "capture_logs",
    "get_client",
    "init_client",
    "reset_client",
    "set_consumer",
]
