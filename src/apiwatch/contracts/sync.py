"""Periodic sync payload contracts."""

from pydantic import BaseModel, Field

from apiwatch.contracts.common import ConsumerMethodPath


class RequestsItem(ConsumerMethodPath):
    """Aggregated statistics for one (consumer, method, path, status) key."""

    status_code: int
    request_count: int
    request_size_sum: int = 0
    response_size_sum: int = 0
    response_times: dict[str, int] = Field(default_factory=dict)
    request_sizes: dict[str, int] = Field(default_factory=dict)
    response_sizes: dict[str, int] = Field(default_factory=dict)


class ServerErrorsItem(ConsumerMethodPath):
    """A deduplicated unhandled server error."""

    type: str
    msg: str
    traceback: str
    error_count: int


class ValidationErrorsItem(ConsumerMethodPath):
    """A deduplicated request validation error."""

    loc: list[str]
    msg: str
    type: str
    error_count: int


class ConsumerItem(BaseModel):
    """Consumer metadata update."""

    identifier: str
    name: str | None = None
    group: str | None = None


class SyncPayload(BaseModel):
    """Everything drained during one sync tick."""

    timestamp: float
    instance_uuid: str
    message_uuid: str
    requests: list[RequestsItem] = Field(default_factory=list)
    server_errors: list[ServerErrorsItem] = Field(default_factory=list)
    validation_errors: list[ValidationErrorsItem] = Field(default_factory=list)
    consumers: list[ConsumerItem] = Field(default_factory=list)
    api_key_usage: dict[str, int] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (
            self.requests
            or self.server_errors
            or self.validation_errors
            or self.consumers
            or self.api_key_usage
        )
