"""In-memory stand-in for the hub transport."""

from __future__ import annotations

from apiwatch.contracts import KeysResponse, StartupPayload, SyncPayload
from apiwatch.engine.hub_api import HubRequestError


class FakeHub:
    """Records everything sent and fails on demand."""

    def __init__(self) -> None:
        self.startup_payloads: list[StartupPayload] = []
        self.sync_payloads: list[SyncPayload] = []
        self.log_files: list[tuple[str, bytes]] = []
        self.keys_response: KeysResponse | None = None
        self.startup_attempts = 0
        self.startup_failures = 0
        self.sync_error: Exception | None = None
        self.log_error: Exception | None = None
        self.keys_error: Exception | None = None
        self.closed = False

    async def send_startup(self, payload: StartupPayload) -> None:
        self.startup_attempts += 1
        if self.startup_failures > 0:
            self.startup_failures -= 1
            raise HubRequestError(503, "unavailable")
        self.startup_payloads.append(payload)

    async def send_sync(self, payload: SyncPayload) -> None:
        if self.sync_error is not None:
            raise self.sync_error
        self.sync_payloads.append(payload)

    async def send_log_file(self, file_uuid: str, content: bytes) -> None:
        if self.log_error is not None:
            raise self.log_error
        self.log_files.append((file_uuid, content))

    async def get_keys(self) -> KeysResponse:
        if self.keys_error is not None:
            raise self.keys_error
        if self.keys_response is None:
            raise HubRequestError(404, "no keys")
        return self.keys_response

    async def close(self) -> None:
        self.closed = True
