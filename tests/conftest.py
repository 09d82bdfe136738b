from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from _fixtures.hub import FakeHub
from apiwatch.config import Settings, get_settings
from apiwatch.sdk.client import Client, reset_client

CLIENT_ID = "2a8c5f4e-3b1d-4c7a-9e6f-0d1b2c3d4e5f"


@pytest.fixture(autouse=True)
def _isolate_apiwatch(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in ("APIWATCH_CLIENT_ID", "APIWATCH_ENV", "APIWATCH_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    reset_client()
    get_settings.cache_clear()


@pytest.fixture
def client_id() -> str:
    return CLIENT_ID


@pytest.fixture
def fake_hub() -> FakeHub:
    return FakeHub()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        sync_interval_seconds=3600,
        keys_refresh_interval_seconds=3600,
        startup_retry_base_seconds=0,
        shutdown_timeout_seconds=2,
    )


@pytest.fixture
def make_client(
    tmp_path: Path, fake_hub: FakeHub, settings: Settings
) -> Iterator[Callable[..., Client]]:
    created: list[Client] = []

    def _make(**kwargs) -> Client:
        kwargs.setdefault("client_id", CLIENT_ID)
        kwargs.setdefault("env", "test")
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("hub", fake_hub)
        kwargs.setdefault("log_directory", tmp_path / "logs")
        client = Client(**kwargs)
        created.append(client)
        return client

    yield _make
    for client in created:
        client.shutdown()
