"""API key registry backed by periodic snapshots from the hub.

Lookups never touch the network: ``get`` hashes the presented key with the
hub-provided salt and checks the current snapshot. ``refresh`` builds a
complete new snapshot and swaps it in with one reference assignment, so
readers see either the old snapshot or the new one, never a partial one.
"""

import hashlib
import logging
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from apiwatch.contracts import KeysResponse
from apiwatch.engine.aggregation import BoundedAggregator

if TYPE_CHECKING:
    from apiwatch.engine.hub_api import HubAPI

logger = logging.getLogger(__name__)

SCRYPT_N = 256
SCRYPT_R = 4
SCRYPT_P = 1
SCRYPT_DKLEN = 32


class KeyRegistryState(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class KeyInfo:
    """Read-only view of an API key known to the hub."""

    key_id: int
    api_key_id: int
    name: str = ""
    scopes: frozenset[str] = field(default_factory=frozenset)
    expires_at: float | None = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < time.time()

    def has_scopes(self, scopes: str | Iterable[str]) -> bool:
        """True if every required scope is granted. An empty requirement always passes."""
        if isinstance(scopes, str):
            scopes = [scopes]
        return all(scope in self.scopes for scope in scopes)


@dataclass(frozen=True)
class _KeySnapshot:
    salt: bytes
    keys: Mapping[str, KeyInfo]


def hash_api_key(api_key: str, salt: bytes) -> str:
    return hashlib.scrypt(
        api_key.encode("utf-8"),
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=SCRYPT_DKLEN,
    ).hex()


class KeyRegistry:
    """Cache of hashed API keys with usage counting."""

    def __init__(self) -> None:
        self._snapshot: _KeySnapshot | None = None
        self._state = KeyRegistryState.UNINITIALIZED
        self._refresh_lock = threading.Lock()
        self._usage: BoundedAggregator[int, int] = BoundedAggregator(max_keys=100_000)
        self.last_refreshed_at: float | None = None

    @property
    def state(self) -> KeyRegistryState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    def get(self, api_key: str | None) -> KeyInfo | None:
        """Look up a raw API key in the current snapshot. Never raises."""
        snapshot = self._snapshot
        if snapshot is None or not api_key:
            return None
        try:
            hashed = hash_api_key(api_key.strip(), snapshot.salt)
        except (AttributeError, TypeError, ValueError):
            logger.debug("Could not hash API key", exc_info=True)
            return None
        key = snapshot.keys.get(hashed)
        if key is None or key.is_expired:
            return None
        self._usage.update(key.api_key_id, lambda: 0, lambda count: count + 1)
        return key

    def update(self, data: KeysResponse | Mapping[str, Any]) -> None:
        """Build a new snapshot from a hub response and swap it in."""
        if not isinstance(data, KeysResponse):
            data = KeysResponse.model_validate(data)
        now = time.time()
        keys = {
            key_hash: KeyInfo(
                key_id=item.key_id,
                api_key_id=item.api_key_id,
                name=item.name,
                scopes=frozenset(item.scopes),
                expires_at=(
                    now + item.expires_in_seconds
                    if item.expires_in_seconds is not None
                    else None
                ),
            )
            for key_hash, item in data.keys.items()
        }
        self._snapshot = _KeySnapshot(salt=bytes.fromhex(data.salt), keys=keys)
        self._state = KeyRegistryState.READY
        self.last_refreshed_at = now

    async def refresh(self, hub: "HubAPI") -> bool:
        """Fetch the full key set from the hub.

        Returns False and keeps the previous snapshot if anything fails; the
        caller is responsible for scheduling a retry.
        """
        if not self._refresh_lock.acquire(blocking=False):
            return False
        previous_state = self._state
        self._state = KeyRegistryState.LOADING
        try:
            data = await hub.get_keys()
            self.update(data)
            logger.debug("Refreshed %d API keys", len(self._snapshot.keys))
            return True
        except Exception as e:
            logger.debug("Failed to refresh API keys: %s", e)
            self._state = (
                KeyRegistryState.READY
                if previous_state == KeyRegistryState.READY
                else KeyRegistryState.UNINITIALIZED
            )
            return False
        finally:
            self._refresh_lock.release()

    def drain_usage(self) -> dict[str, int]:
        """Successful lookups per api_key_id since the previous drain."""
        return {str(api_key_id): count for api_key_id, count in self._usage.drain().items()}
