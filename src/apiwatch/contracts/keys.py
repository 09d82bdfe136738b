"""API key snapshot returned by the hub."""

from pydantic import BaseModel, Field


class KeyData(BaseModel):
    """A single hashed API key as served by the hub."""

    key_id: int
    api_key_id: int
    name: str = ""
    scopes: list[str] = Field(default_factory=list)
    expires_in_seconds: float | None = None


class KeysResponse(BaseModel):
    """Full key set: scrypt salt plus keys indexed by hash."""

    salt: str
    keys: dict[str, KeyData] = Field(default_factory=dict)
