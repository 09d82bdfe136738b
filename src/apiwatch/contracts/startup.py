"""Startup handshake payload sent once per process."""

from pydantic import BaseModel, Field


class PathInfo(BaseModel):
    """A registered route template."""

    method: str
    path: str


class StartupPayload(BaseModel):
    """Route list and component versions announced to the hub."""

    instance_uuid: str
    message_uuid: str
    paths: list[PathInfo] = Field(default_factory=list)
    versions: dict[str, str] = Field(default_factory=dict)
    client: str
