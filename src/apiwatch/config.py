"""apiwatch configuration with sensible defaults for development."""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from apiwatch.engine.request_log import RequestLoggingConfig

DEFAULT_RESPONSE_TIME_BUCKETS_MS: list[float] = [
    5,
    10,
    25,
    50,
    100,
    250,
    500,
    1_000,
    2_500,
    5_000,
    10_000,
    30_000,
]
DEFAULT_SIZE_BUCKETS_KB: list[float] = [1, 4, 16, 64, 256, 1_024, 4_096, 16_384]


class Settings(BaseSettings):
    """
    apiwatch configuration.

    All settings can be overridden via environment variables with APIWATCH_ prefix.
    Without a client id the agent stays disabled and every call is a no-op.
    """

    model_config = SettingsConfigDict(
        env_prefix="APIWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    # Hub credentials and target
    client_id: str | None = None
    env: str = "default"
    hub_url: str = "https://hub.apiwatch.dev"
    app_version: str | None = None
    sync_api_keys: bool = False

    # Sync cadence
    sync_interval_seconds: float = 60.0
    keys_refresh_interval_seconds: float = 300.0
    keys_retry_interval_seconds: float = 30.0
    request_timeout_seconds: float = 10.0
    shutdown_timeout_seconds: float = 5.0

    # Startup handshake retry controls
    startup_retry_attempts: int = 5
    startup_retry_base_seconds: float = 1.0
    startup_retry_max_seconds: float = 60.0

    # Aggregation bounds
    max_counter_keys: int = 10_000
    max_consumers: int = 100_000
    response_time_buckets_ms: list[float] = Field(
        default_factory=lambda: list(DEFAULT_RESPONSE_TIME_BUCKETS_MS)
    )
    size_buckets_kb: list[float] = Field(
        default_factory=lambda: list(DEFAULT_SIZE_BUCKETS_KB)
    )

    # Request logging controls
    request_log_enabled: bool = False
    request_log_query_params: bool = True
    request_log_request_headers: bool = False
    request_log_request_body: bool = False
    request_log_response_headers: bool = True
    request_log_response_body: bool = False
    request_log_capture_logs: bool = False
    request_log_mask_query_params: list[str] = Field(default_factory=list)
    request_log_mask_headers: list[str] = Field(default_factory=list)
    request_log_mask_body_fields: list[str] = Field(default_factory=list)
    request_log_exclude_paths: list[str] = Field(default_factory=list)
    request_log_max_body_size: int = 50_000
    request_log_max_segment_entries: int = 1_000
    request_log_max_segment_bytes: int = 5_000_000
    request_log_max_files: int = 50
    log_files_per_sync: int = 10

    def request_logging_config(self) -> RequestLoggingConfig:
        """Build the request logger configuration from flat settings."""
        from apiwatch.engine.request_log import RequestLoggingConfig

        return RequestLoggingConfig(
            enabled=self.request_log_enabled,
            log_query_params=self.request_log_query_params,
            log_request_headers=self.request_log_request_headers,
            log_request_body=self.request_log_request_body,
            log_response_headers=self.request_log_response_headers,
            log_response_body=self.request_log_response_body,
            capture_logs=self.request_log_capture_logs,
            mask_query_params=list(self.request_log_mask_query_params),
            mask_headers=list(self.request_log_mask_headers),
            mask_body_fields=list(self.request_log_mask_body_fields),
            exclude_paths=list(self.request_log_exclude_paths),
            max_body_size=self.request_log_max_body_size,
            max_segment_entries=self.request_log_max_segment_entries,
            max_segment_bytes=self.request_log_max_segment_bytes,
            max_files=self.request_log_max_files,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
