"""Consumer (identified caller) metadata registry."""

import logging
import threading
from dataclasses import dataclass
from typing import Any

from apiwatch.contracts import ConsumerItem
from apiwatch.engine.aggregation import BoundedAggregator, EvictionPolicy

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 128
MAX_NAME_LENGTH = 64


@dataclass
class Consumer:
    """An identified caller of the instrumented API."""

    identifier: str
    name: str | None = None
    group: str | None = None

    @classmethod
    def from_value(cls, value: "Consumer | dict[str, Any] | str | None") -> "Consumer | None":
        """Normalize a string, mapping or Consumer into a trimmed Consumer.

        Returns None when no usable identifier is present.
        """
        if value is None:
            return None
        if isinstance(value, Consumer):
            identifier, name, group = value.identifier, value.name, value.group
        elif isinstance(value, dict):
            identifier = value.get("identifier")
            name, group = value.get("name"), value.get("group")
        else:
            identifier, name, group = value, None, None

        if identifier is None:
            return None
        identifier = str(identifier).strip()[:MAX_IDENTIFIER_LENGTH]
        if not identifier:
            return None
        return cls(
            identifier=identifier,
            name=_clean(name),
            group=_clean(group),
        )


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()[:MAX_NAME_LENGTH]
    return cleaned or None


class ConsumerRegistry:
    """Tracks known consumers and which of them need to be sent to the hub."""

    def __init__(self, max_consumers: int = 100_000) -> None:
        self._known: BoundedAggregator[str, Consumer] = BoundedAggregator(
            max_keys=max_consumers, policy=EvictionPolicy.EVICT_OLDEST
        )
        self._pending_lock = threading.Lock()
        self._pending: set[str] = set()

    def add_or_update_consumer(
        self, consumer: "Consumer | dict[str, Any] | str | None"
    ) -> Consumer | None:
        """Register a consumer, marking it pending if new or changed. Never raises."""
        try:
            normalized = Consumer.from_value(consumer)
        except Exception:
            logger.debug("Ignoring malformed consumer", exc_info=True)
            return None
        if normalized is None:
            return None

        changed = False

        def _new() -> Consumer:
            nonlocal changed
            changed = True
            return Consumer(identifier=normalized.identifier)

        def _apply(existing: Consumer) -> None:
            nonlocal changed
            if normalized.name and normalized.name != existing.name:
                existing.name = normalized.name
                changed = True
            if normalized.group and normalized.group != existing.group:
                existing.group = normalized.group
                changed = True

        self._known.update(normalized.identifier, _new, _apply)
        self._known.touch(normalized.identifier)
        if changed:
            with self._pending_lock:
                self._pending.add(normalized.identifier)
        return normalized

    def drain(self) -> list[ConsumerItem]:
        """Return consumers that are new or changed since the last drain."""
        with self._pending_lock:
            pending, self._pending = self._pending, set()
        items: list[ConsumerItem] = []
        for identifier in pending:
            consumer = self._known.get(identifier)
            if consumer is None:
                continue
            items.append(
                ConsumerItem(
                    identifier=consumer.identifier,
                    name=consumer.name,
                    group=consumer.group,
                )
            )
        return items
