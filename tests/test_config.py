from __future__ import annotations

import pytest
from apiwatch.config import DEFAULT_RESPONSE_TIME_BUCKETS_MS, Settings, get_settings


def test_defaults_leave_agent_unconfigured() -> None:
    settings = Settings(_env_file=None)

    assert settings.client_id is None
    assert settings.env == "default"
    assert settings.sync_interval_seconds == 60
    assert settings.response_time_buckets_ms == DEFAULT_RESPONSE_TIME_BUCKETS_MS
    assert settings.request_log_enabled is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APIWATCH_CLIENT_ID", "2a8c5f4e-3b1d-4c7a-9e6f-0d1b2c3d4e5f")
    monkeypatch.setenv("APIWATCH_ENV", "prod")
    monkeypatch.setenv("APIWATCH_REQUEST_LOG_ENABLED", "true")
    monkeypatch.setenv("APIWATCH_REQUEST_LOG_MASK_HEADERS", '["^x-tenant$"]')

    settings = get_settings()

    assert settings.client_id == "2a8c5f4e-3b1d-4c7a-9e6f-0d1b2c3d4e5f"
    assert settings.env == "prod"
    assert settings.request_log_mask_headers == ["^x-tenant$"]
    assert get_settings() is settings


def test_request_logging_config_is_built_from_flat_settings() -> None:
    settings = Settings(
        _env_file=None,
        request_log_enabled=True,
        request_log_request_body=True,
        request_log_exclude_paths=["^/admin"],
        request_log_max_body_size=1_000,
    )

    config = settings.request_logging_config()

    assert config.enabled
    assert config.log_request_body
    assert not config.log_response_body
    assert config.exclude_paths == ["^/admin"]
    assert config.max_body_size == 1_000
