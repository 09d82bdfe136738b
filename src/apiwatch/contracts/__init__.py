"""Wire contracts exchanged with the hub."""

from apiwatch.contracts.common import ConsumerMethodPath
from apiwatch.contracts.keys import KeyData, KeysResponse
from apiwatch.contracts.startup import PathInfo, StartupPayload
from apiwatch.contracts.sync import (
    ConsumerItem,
    RequestsItem,
    ServerErrorsItem,
    SyncPayload,
    ValidationErrorsItem,
)

__all__ = [
    "ConsumerItem",
    "ConsumerMethodPath",
    "KeyData",
    "KeysResponse",
    "PathInfo",
    "RequestsItem",
    "ServerErrorsItem",
    "StartupPayload",
    "SyncPayload",
    "ValidationErrorsItem",
]
