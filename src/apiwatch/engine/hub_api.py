"""HTTP transport to the apiwatch hub."""

import logging
from typing import Any, Self

import aiohttp
from pydantic import BaseModel, TypeAdapter

from apiwatch.contracts import KeysResponse, StartupPayload, SyncPayload

logger = logging.getLogger(__name__)

_keys_response_adapter = TypeAdapter(KeysResponse)


class HubRequestError(Exception):
    """The hub answered with a non-2xx status."""

    def __init__(self, status: int, text: str = "") -> None:
        self.status = status
        self.text = text
        super().__init__(f"Hub request failed: HTTP {status} {text[:200]}".rstrip())


class InvalidClientIdError(HubRequestError):
    """The hub does not know the configured client id."""


class HubAPI:
    """Hub client scoped to one client id and environment."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        user_agent: str | None = None,
    ) -> None:
        """Initialize the hub client.

        Args:
            base_url: Hub URL including the client id and env segments
            timeout_seconds: Total timeout applied to every request
            user_agent: Optional User-Agent header value
        """
        headers = {}
        if user_agent:
            headers["User-Agent"] = user_agent
        self._headers = headers
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: Any,
    ) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or bool(getattr(self._session, "closed", False)):
            self._session = aiohttp.ClientSession(
                headers=self._headers, timeout=self._timeout
            )
        return self._session

    async def close(self) -> None:
        session = self._session
        if session is None:
            return
        if not bool(getattr(session, "closed", False)):
            await session.close()
        self._session = None

    async def _raise_for_status(self, resp: aiohttp.ClientResponse) -> None:
        if 200 <= resp.status < 300:
            return
        text = await resp.text()
        if resp.status == 404 and "Client ID" in text:
            raise InvalidClientIdError(resp.status, text)
        raise HubRequestError(resp.status, text)

    async def _post_json(self, path: str, payload: BaseModel) -> None:
        session = await self._ensure_session()
        async with session.post(
            f"{self._base_url}{path}",
            json=payload.model_dump(mode="json"),
        ) as resp:
            await self._raise_for_status(resp)

    async def send_startup(self, payload: StartupPayload) -> None:
        await self._post_json("/startup", payload)
        logger.debug("Sent startup data (%d paths)", len(payload.paths))

    async def send_sync(self, payload: SyncPayload) -> None:
        await self._post_json("/sync", payload)
        logger.debug(
            "Sent sync data (%d request groups, %d server errors)",
            len(payload.requests),
            len(payload.server_errors),
        )

    async def send_log_file(self, file_uuid: str, content: bytes) -> None:
        session = await self._ensure_session()
        async with session.post(
            f"{self._base_url}/log",
            params={"uuid": file_uuid},
            data=content,
            headers={"Content-Type": "application/octet-stream"},
        ) as resp:
            await self._raise_for_status(resp)

    async def get_keys(self) -> KeysResponse:
        session = await self._ensure_session()
        async with session.get(f"{self._base_url}/keys") as resp:
            await self._raise_for_status(resp)
            data = await resp.json()
        return _keys_response_adapter.validate_python(data)
