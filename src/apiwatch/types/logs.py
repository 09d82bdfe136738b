import time
from dataclasses import dataclass, field


@dataclass
class LogRecord:
    """An application log line captured while a request was being handled."""

    message: str
    level: str = "INFO"
    logger: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, str | float]:
        data: dict[str, str | float] = {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
        }
        if self.logger:
            data["logger"] = self.logger
        return data
