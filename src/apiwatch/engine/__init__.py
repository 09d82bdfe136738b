"""apiwatch engine - collectors, request log and hub transport."""

from apiwatch.engine.aggregation import BoundedAggregator, EvictionPolicy, Histogram
from apiwatch.engine.consumers import Consumer, ConsumerRegistry
from apiwatch.engine.errors import ServerErrorCounter, ValidationErrorCounter
from apiwatch.engine.hub_api import HubAPI, HubRequestError, InvalidClientIdError
from apiwatch.engine.keys import KeyInfo, KeyRegistry, KeyRegistryState
from apiwatch.engine.request_counter import RequestCounter
from apiwatch.engine.request_log import RequestLogger, RequestLoggingConfig
from apiwatch.engine.temp_gzip import TempGzipFile

__all__ = [
    # Aggregation
    "BoundedAggregator",
    "EvictionPolicy",
    "Histogram",
    # Collectors
    "RequestCounter",
    "ServerErrorCounter",
    "ValidationErrorCounter",
    "Consumer",
    "ConsumerRegistry",
    # Keys
    "KeyInfo",
    "KeyRegistry",
    "KeyRegistryState",
    # Request log
    "RequestLogger",
    "RequestLoggingConfig",
    "TempGzipFile",
    # Hub
    "HubAPI",
    "HubRequestError",
    "InvalidClientIdError",
]
