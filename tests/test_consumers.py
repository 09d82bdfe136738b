from __future__ import annotations

from apiwatch.engine.consumers import Consumer, ConsumerRegistry


def test_consumer_from_string_is_trimmed() -> None:
    consumer = Consumer.from_value("  customer-1 ")

    assert consumer == Consumer(identifier="customer-1")


def test_consumer_fields_are_capped() -> None:
    consumer = Consumer.from_value(
        {"identifier": "i" * 200, "name": "n" * 100, "group": "  "}
    )

    assert consumer is not None
    assert len(consumer.identifier) == 128
    assert len(consumer.name or "") == 64
    assert consumer.group is None


def test_empty_identifier_is_not_a_consumer() -> None:
    assert Consumer.from_value("   ") is None
    assert Consumer.from_value(None) is None
    assert Consumer.from_value({"name": "no id"}) is None


def test_new_consumer_is_sent_once() -> None:
    registry = ConsumerRegistry()
    registry.add_or_update_consumer("customer-1")
    registry.add_or_update_consumer("customer-1")

    assert [c.identifier for c in registry.drain()] == ["customer-1"]

    registry.add_or_update_consumer("customer-1")
    assert registry.drain() == []


def test_changed_name_or_group_is_sent_again() -> None:
    registry = ConsumerRegistry()
    registry.add_or_update_consumer("customer-1")
    registry.drain()

    registry.add_or_update_consumer(
        {"identifier": "customer-1", "name": "Customer One", "group": "Enterprise"}
    )
    [item] = registry.drain()

    assert item.name == "Customer One"
    assert item.group == "Enterprise"


def test_missing_name_does_not_clear_known_name() -> None:
    registry = ConsumerRegistry()
    registry.add_or_update_consumer(Consumer(identifier="customer-1", name="One"))
    registry.drain()

    registry.add_or_update_consumer("customer-1")

    assert registry.drain() == []


def test_least_recently_seen_consumer_is_evicted() -> None:
    registry = ConsumerRegistry(max_consumers=2)
    for identifier in ("a", "b", "c"):
        registry.add_or_update_consumer(identifier)

    assert {c.identifier for c in registry.drain()} == {"b", "c"}

    registry.add_or_update_consumer("a")
    assert [c.identifier for c in registry.drain()] == ["a"]


def test_invalid_consumer_is_ignored() -> None:
    registry = ConsumerRegistry()

    assert registry.add_or_update_consumer(None) is None
    assert registry.add_or_update_consumer("") is None
    assert registry.drain() == []
