"""Gzip-compressed temporary files holding sealed request log segments."""

import contextlib
import gzip
import logging
import tempfile
import uuid
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

TEMP_DIR = Path(tempfile.gettempdir()) / "apiwatch"


def check_writable_fs(directory: Path = TEMP_DIR) -> bool:
    """Whether temporary segment files can be created in ``directory``."""
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe = directory / f"probe_{uuid.uuid4().hex}"
        probe.write_bytes(b"probe")
        probe.unlink()
        return True
    except OSError:
        return False


class TempGzipFile:
    """An append-only gzip file of newline-delimited records."""

    def __init__(self, name: str = "requests", directory: Path | None = None) -> None:
        directory = directory or TEMP_DIR
        directory.mkdir(parents=True, exist_ok=True)
        self.uuid = str(uuid.uuid4())
        self.path = directory / f"{name}_{self.uuid}.gz"
        self.line_count = 0
        self._raw: BinaryIO | None = open(self.path, "wb")  # noqa: SIM115
        self._gzip: gzip.GzipFile | None = gzip.GzipFile(
            fileobj=self._raw, mode="wb"
        )

    def __repr__(self) -> str:
        return f"TempGzipFile({self.path.name}, lines={self.line_count})"

    @property
    def closed(self) -> bool:
        return self._gzip is None

    @property
    def size(self) -> int:
        """Compressed bytes written to disk so far."""
        if self._raw is not None and not self._raw.closed:
            return self._raw.tell()
        try:
            return self.path.stat().st_size
        except OSError:
            return 0

    def write_line(self, data: bytes) -> None:
        if self._gzip is None:
            raise ValueError(f"{self!r} is closed")
        self._gzip.write(data + b"\n")
        self.line_count += 1

    def close(self) -> None:
        gz, raw = self._gzip, self._raw
        self._gzip = self._raw = None
        try:
            if gz is not None:
                gz.close()
        finally:
            if raw is not None:
                raw.close()

    def get_content(self) -> bytes:
        """Compressed content of the finished file."""
        self.close()
        return self.path.read_bytes()

    def delete(self) -> None:
        try:
            self.close()
        finally:
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()
