"""Streaming body capture with a size cap."""

from dataclasses import dataclass, field


@dataclass
class BodyCapture:
    """Accumulates a streamed body while always counting its true size.

    Once the streamed size exceeds ``max_body_size`` the buffered chunks are
    discarded and ``body`` stays None; ``size`` keeps counting.
    """

    capture_body: bool = False
    max_body_size: int = 50_000
    size: int = 0
    completed: bool = False
    limit_exceeded: bool = False
    _chunks: list[bytes] = field(default_factory=list, repr=False)

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self.size += len(chunk)
        if not self.capture_body or self.limit_exceeded:
            return
        if self.size > self.max_body_size:
            self.limit_exceeded = True
            self._chunks.clear()
        else:
            self._chunks.append(chunk)

    def finish(self) -> None:
        self.completed = True

    @property
    def body(self) -> bytes | None:
        if not self.capture_body or self.limit_exceeded or not self.completed:
            return None
        return b"".join(self._chunks)
