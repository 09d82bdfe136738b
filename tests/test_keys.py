from __future__ import annotations

import asyncio

import pytest
from _fixtures.hub import FakeHub
from apiwatch.contracts import KeyData, KeysResponse
from apiwatch.engine.hub_api import HubRequestError
from apiwatch.engine.keys import KeyRegistry, KeyRegistryState, hash_api_key

SALT = "00112233445566778899aabbccddeeff"


def _keys_response() -> KeysResponse:
    salt = bytes.fromhex(SALT)
    keys = {
        hash_api_key("live-key", salt): KeyData(
            key_id=1, api_key_id=10, name="ci", scopes=["read", "write"]
        ),
        hash_api_key("old-key", salt): KeyData(
            key_id=2, api_key_id=20, name="old", expires_in_seconds=-1
        ),
    }
    return KeysResponse(salt=SALT, keys=keys)


def test_lookup_before_first_refresh_finds_nothing() -> None:
    registry = KeyRegistry()

    assert registry.state == KeyRegistryState.UNINITIALIZED
    assert registry.get("live-key") is None


def test_lookup_after_update() -> None:
    registry = KeyRegistry()
    registry.update(_keys_response())

    key = registry.get("live-key")

    assert registry.state == KeyRegistryState.READY
    assert key is not None
    assert key.key_id == 1
    assert key.name == "ci"
    assert key.has_scopes("read")
    assert key.has_scopes(["read", "write"])
    assert key.has_scopes([])
    assert not key.has_scopes(["read", "admin"])


def test_unknown_blank_and_expired_keys_are_rejected() -> None:
    registry = KeyRegistry()
    registry.update(_keys_response())

    assert registry.get("other-key") is None
    assert registry.get("") is None
    assert registry.get(None) is None
    assert registry.get("old-key") is None


def test_usage_is_counted_per_api_key_id() -> None:
    registry = KeyRegistry()
    registry.update(_keys_response())
    registry.get("live-key")
    registry.get("live-key")
    registry.get("other-key")

    assert registry.drain_usage() == {"10": 2}
    assert registry.drain_usage() == {}


def test_update_accepts_raw_mapping() -> None:
    registry = KeyRegistry()
    registry.update(_keys_response().model_dump())

    assert registry.get("live-key") is not None


@pytest.mark.asyncio
async def test_refresh_swaps_in_hub_snapshot(fake_hub: FakeHub) -> None:
    registry = KeyRegistry()
    fake_hub.keys_response = _keys_response()

    assert await registry.refresh(fake_hub) is True
    assert registry.is_ready
    assert registry.last_refreshed_at is not None
    assert registry.get("live-key") is not None


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot(fake_hub: FakeHub) -> None:
    registry = KeyRegistry()
    fake_hub.keys_response = _keys_response()
    await registry.refresh(fake_hub)

    fake_hub.keys_error = HubRequestError(500, "down")

    assert await registry.refresh(fake_hub) is False
    assert registry.state == KeyRegistryState.READY
    assert registry.get("live-key") is not None


@pytest.mark.asyncio
async def test_failed_first_refresh_stays_uninitialized(fake_hub: FakeHub) -> None:
    registry = KeyRegistry()
    fake_hub.keys_error = HubRequestError(500, "down")

    assert await registry.refresh(fake_hub) is False
    assert registry.state == KeyRegistryState.UNINITIALIZED
    assert registry.get("live-key") is None


class _BlockingHub:
    def __init__(self, response: KeysResponse) -> None:
        self.response = response
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def get_keys(self) -> KeysResponse:
        self.started.set()
        await self.release.wait()
        return self.response


@pytest.mark.asyncio
async def test_previous_snapshot_is_served_while_loading() -> None:
    registry = KeyRegistry()
    registry.update(_keys_response())
    hub = _BlockingHub(KeysResponse(salt=SALT, keys={}))

    refresh = asyncio.create_task(registry.refresh(hub))
    await hub.started.wait()

    assert registry.state == KeyRegistryState.LOADING
    key = registry.get("live-key")
    assert key is not None
    assert key.api_key_id == 10
    assert await registry.refresh(hub) is False

    hub.release.set()

    assert await refresh is True
    assert registry.state == KeyRegistryState.READY
    assert registry.get("live-key") is None
