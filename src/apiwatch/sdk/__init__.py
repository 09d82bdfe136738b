"""apiwatch SDK - client singleton and framework integration."""

from apiwatch.sdk.body_capture import BodyCapture
from apiwatch.sdk.client import Client, get_client, init_client, reset_client
from apiwatch.sdk.log_capture import (
    CaptureLogHandler,
    capture_logs,
    install_capture_handler,
    uninstall_capture_handler,
)
from apiwatch.sdk.middleware import ApiwatchMiddleware, set_consumer
from apiwatch.sdk.versions import get_versions

__all__ = [
    # Client
    "Client",
    "get_client",
    "init_client",
    "reset_client",
    "get_versions",
    # Framework integration
    "ApiwatchMiddleware",
    "BodyCapture",
    "set_consumer",
    # Log capture
    "CaptureLogHandler",
    "capture_logs",
    "install_capture_handler",
    "uninstall_capture_handler",
]
