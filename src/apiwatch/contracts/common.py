"""Shared contract fragments."""

from pydantic import BaseModel


class ConsumerMethodPath(BaseModel):
    """Grouping fields shared by every aggregated item."""

    consumer: str | None = None
    method: str
    path: str
