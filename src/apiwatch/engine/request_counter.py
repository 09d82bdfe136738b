"""Per-endpoint request statistics, accumulated as deltas between syncs."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from apiwatch.config import DEFAULT_RESPONSE_TIME_BUCKETS_MS, DEFAULT_SIZE_BUCKETS_KB
from apiwatch.contracts import RequestsItem
from apiwatch.engine.aggregation import (
    BoundedAggregator,
    Histogram,
    check_endpoint_fields,
    normalize_boundaries,
)

logger = logging.getLogger(__name__)

RequestKey = tuple[str, str, str, int]


@dataclass
class _RequestStats:
    response_times: Histogram
    request_sizes: Histogram
    response_sizes: Histogram
    count: int = 0
    request_size_sum: int = 0
    response_size_sum: int = 0


def parse_size(value: Any) -> int | None:
    """Coerce a content length (int, str, list of str) to int, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value >= 0 else None
    if isinstance(value, bytes):
        value = value.decode("latin-1")
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return parsed if parsed >= 0 else None
    if isinstance(value, (list, tuple)) and value:
        return parse_size(value[0])
    return None


class RequestCounter:
    """Counts requests per (consumer, method, path, status code)."""

    def __init__(
        self,
        max_keys: int = 10_000,
        response_time_buckets_ms: Sequence[float] = DEFAULT_RESPONSE_TIME_BUCKETS_MS,
        size_buckets_kb: Sequence[float] = DEFAULT_SIZE_BUCKETS_KB,
    ) -> None:
        self._stats: BoundedAggregator[RequestKey, _RequestStats] = BoundedAggregator(
            max_keys=max_keys
        )
        self._time_buckets = normalize_boundaries(response_time_buckets_ms)
        self._size_buckets = normalize_boundaries(size_buckets_kb)

    def _new_stats(self) -> _RequestStats:
        return _RequestStats(
            response_times=Histogram(self._time_buckets),
            request_sizes=Histogram(self._size_buckets),
            response_sizes=Histogram(self._size_buckets),
        )

    def record(
        self,
        consumer: str | None,
        method: str,
        path: str,
        status_code: int,
        response_time: float,
        request_size: Any = None,
        response_size: Any = None,
    ) -> None:
        """Count one handled request. Never raises.

        Args:
            consumer: Consumer identifier, if the caller was identified
            method: HTTP method
            path: Route template (not the raw path)
            status_code: Response status code
            response_time: Response time in seconds
            request_size: Request body size in bytes, if known
            response_size: Response body size in bytes, if known
        """
        try:
            check_endpoint_fields(consumer, method, path)
            key: RequestKey = (
                consumer or "",
                method.upper(),
                path,
                int(status_code),
            )
            response_time_ms = max(float(response_time), 0.0) * 1000
            req_size = parse_size(request_size)
            resp_size = parse_size(response_size)
        except (AttributeError, TypeError, ValueError):
            logger.debug("Ignoring malformed request record", exc_info=True)
            return

        def _apply(stats: _RequestStats) -> None:
            stats.count += 1
            stats.response_times.add(response_time_ms)
            if req_size is not None:
                stats.request_size_sum += req_size
                stats.request_sizes.add(req_size / 1000)
            if resp_size is not None:
                stats.response_size_sum += resp_size
                stats.response_sizes.add(resp_size / 1000)

        if not self._stats.update(key, self._new_stats, _apply):
            logger.debug("Request counter full, dropping %s %s", method, path)

    def drain(self) -> list[RequestsItem]:
        """Return all counted requests since the previous drain and reset."""
        items: list[RequestsItem] = []
        for (consumer, method, path, status_code), stats in self._stats.drain().items():
            items.append(
                RequestsItem(
                    consumer=consumer or None,
                    method=method,
                    path=path,
                    status_code=status_code,
                    request_count=stats.count,
                    request_size_sum=stats.request_size_sum,
                    response_size_sum=stats.response_size_sum,
                    response_times=stats.response_times.to_dict(),
                    request_sizes=stats.request_sizes.to_dict(),
                    response_sizes=stats.response_sizes.to_dict(),
                )
            )
        return items
