"""Request and response data handed over by framework adapters."""

from dataclasses import dataclass, field

Header = tuple[str, str]


@dataclass
class RequestInfo:
    """What the adapter knows about an incoming request."""

    timestamp: float
    method: str
    url: str
    path: str | None = None
    headers: list[Header] = field(default_factory=list)
    size: int | None = None
    consumer: str | None = None
    body: bytes | None = None

    def header(self, name: str) -> str | None:
        return find_header(self.headers, name)


@dataclass
class ResponseInfo:
    """What the adapter knows about the response sent for a request."""

    status_code: int
    response_time: float
    headers: list[Header] = field(default_factory=list)
    size: int | None = None
    body: bytes | None = None

    def header(self, name: str) -> str | None:
        return find_header(self.headers, name)


def find_header(headers: list[Header], name: str) -> str | None:
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None
