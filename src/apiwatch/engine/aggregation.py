"""Bounded keyed aggregation primitives shared by all counters.

Every counter on the request path is a dict guarded by a single lock.
Writers hold the lock for one dict lookup plus an in-place update; drains
swap the whole dict for an empty one under the same lock, so a concurrent
writer lands either in the drained snapshot or in the fresh map, never both
and never neither.

Example:
    agg = BoundedAggregator[tuple[str, str], int](max_keys=1000)
    agg.update(("GET", "/users"), lambda: 0, lambda v: v + 1)
    snapshot = agg.drain()
"""

import logging
import threading
from bisect import bisect_left
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from enum import StrEnum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


class EvictionPolicy(StrEnum):
    """What to do when a new key arrives at a full aggregator."""

    DROP_NEW = "drop_new"
    EVICT_OLDEST = "evict_oldest"


class BoundedAggregator(Generic[K, V]):
    """Lock-guarded mapping with a key cap and an atomic drain."""

    def __init__(
        self,
        max_keys: int = 10_000,
        policy: EvictionPolicy = EvictionPolicy.DROP_NEW,
    ) -> None:
        self._max_keys = max(1, max_keys)
        self._policy = policy
        self._lock = threading.Lock()
        self._items: OrderedDict[K, V] = OrderedDict()
        self._dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    @property
    def dropped_count(self) -> int:
        """Number of updates rejected or entries evicted because of the key cap."""
        return self._dropped

    def update(
        self,
        key: K,
        factory: Callable[[], V],
        mutate: Callable[[V], V | None],
    ) -> bool:
        """Create the entry for ``key`` if needed and apply ``mutate`` to it.

        ``mutate`` may update the value in place (returning None) or return a
        replacement. Returns False when the key was rejected by the cap.
        """
        with self._lock:
            value = self._items.get(key)
            if value is None:
                if len(self._items) >= self._max_keys:
                    self._dropped += 1
                    if self._policy == EvictionPolicy.DROP_NEW:
                        return False
                    self._items.popitem(last=False)
                value = factory()
                self._items[key] = value
            result = mutate(value)
            if result is not None:
                self._items[key] = result
            return True

    def get(self, key: K) -> V | None:
        with self._lock:
            return self._items.get(key)

    def touch(self, key: K) -> None:
        """Mark ``key`` as most recently used."""
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)

    def drain(self) -> dict[K, V]:
        """Take all entries and leave the aggregator empty."""
        with self._lock:
            items, self._items = self._items, OrderedDict()
        return dict(items)

    def clear(self) -> None:
        with self._lock:
            self._items = OrderedDict()


class Histogram:
    """Fixed-boundary histogram with constant memory.

    ``boundaries`` are inclusive upper bounds in ascending order. Values above
    the last boundary go to an overflow bucket labelled ``"inf"``.
    """

    __slots__ = ("_boundaries", "_counts")

    def __init__(self, boundaries: Sequence[float]) -> None:
        self._boundaries = boundaries
        self._counts = [0] * (len(boundaries) + 1)

    def add(self, value: float) -> None:
        self._counts[bisect_left(self._boundaries, value)] += 1

    @property
    def total(self) -> int:
        return sum(self._counts)

    def to_dict(self) -> dict[str, int]:
        """Non-empty buckets keyed by their upper bound."""
        data: dict[str, int] = {}
        for index, count in enumerate(self._counts):
            if not count:
                continue
            if index < len(self._boundaries):
                label = f"{self._boundaries[index]:g}"
            else:
                label = "inf"
            data[label] = count
        return data


def normalize_boundaries(values: Iterable[float]) -> tuple[float, ...]:
    """Sorted, de-duplicated, positive bucket boundaries."""
    cleaned = sorted({float(v) for v in values if float(v) > 0})
    if not cleaned:
        raise ValueError("At least one positive bucket boundary is required")
    return tuple(cleaned)


def check_endpoint_fields(consumer: object, method: object, path: object) -> None:
    """Raise TypeError unless method and path are str and consumer is str or None.

    Collectors call this before building a key so a malformed record is
    rejected at ``record`` time instead of failing the next ``drain``.
    """
    if not isinstance(method, str) or not isinstance(path, str):
        raise TypeError("method and path must be strings")
    if consumer is not None and not isinstance(consumer, str):
        raise TypeError("consumer must be a string")
