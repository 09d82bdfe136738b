"""Request logging: build, redact, buffer and rotate request log entries.

The request path only serializes an entry and appends it to the active
in-memory segment. Segments are sealed when they reach their entry or byte
cap (or on ``rotate_file``) and compressed into ``TempGzipFile``s by the sync
thread, which then claims them with ``get_file`` and deletes them once the hub
has accepted the content.

Example:
    logger = RequestLogger(RequestLoggingConfig(enabled=True))
    logger.log_request(request_info, response_info)

    # later, in the sync thread
    logger.rotate_file()
    while (file := logger.get_file()) is not None:
        upload(file.get_content())
        file.delete()
"""

import base64
import contextlib
import json
import logging
import re
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from apiwatch.engine.errors import format_traceback, truncate_message, truncate_traceback
from apiwatch.engine.temp_gzip import TEMP_DIR, TempGzipFile, check_writable_fs
from apiwatch.types import Header, LogRecord, RequestInfo, ResponseInfo

logger = logging.getLogger(__name__)

MASKED = "******"
BODY_MASKED = b"<masked>"
MAX_LOG_MESSAGE_LENGTH = 2048
SUSPEND_SECONDS = 3600

SUPPORTED_CONTENT_TYPE_PATTERN = re.compile(
    r"^(application/json|application/[\w.+-]+\+json|application/x-ndjson|text/[\w.+-]+)",
    re.IGNORECASE,
)
EXCLUDE_PATH_PATTERNS = [
    r"/_?healthz?$",
    r"/_?health[_-]?checks?$",
    r"/_?heart[_-]?beats?$",
    r"/ping$",
    r"/ready$",
    r"/live$",
]
MASK_QUERY_PARAM_PATTERNS = [
    r"auth",
    r"api-?key",
    r"secret",
    r"token",
    r"password",
    r"pwd",
]
MASK_HEADER_PATTERNS = [
    r"auth",
    r"api-?key",
    r"secret",
    r"token",
    r"cookie",
]
MASK_BODY_FIELD_PATTERNS = [
    r"password",
    r"pwd",
    r"token",
    r"secret",
    r"auth",
    r"card[-_ ]?number",
    r"ccv",
    r"ssn",
]

BodyCallback = Callable[[RequestInfo, ResponseInfo], bytes | None]
ExcludeCallback = Callable[[RequestInfo, ResponseInfo], bool]


@dataclass
class RequestLoggingConfig:
    """Controls what request logging captures and how segments are bounded."""

    enabled: bool = False
    log_query_params: bool = True
    log_request_headers: bool = False
    log_request_body: bool = False
    log_response_headers: bool = True
    log_response_body: bool = False
    capture_logs: bool = False
    mask_query_params: list[str] = field(default_factory=list)
    mask_headers: list[str] = field(default_factory=list)
    mask_body_fields: list[str] = field(default_factory=list)
    mask_request_body_callback: BodyCallback | None = None
    mask_response_body_callback: BodyCallback | None = None
    exclude_paths: list[str] = field(default_factory=list)
    exclude_callback: ExcludeCallback | None = None
    max_body_size: int = 50_000
    max_segment_entries: int = 1_000
    max_segment_bytes: int = 5_000_000
    max_files: int = 50


def _compile(patterns: Sequence[str], defaults: Sequence[str]) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in [*patterns, *defaults]]


def _matches(value: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    return any(p.search(value) for p in patterns)


def is_supported_content_type(content_type: str | None) -> bool:
    return bool(content_type) and bool(
        SUPPORTED_CONTENT_TYPE_PATTERN.match(content_type.strip())
    )


def _is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _skip_empty(data: dict[str, Any]) -> dict[str, Any]:
    return {
        k: v
        for k, v in data.items()
        if v is not None and not (isinstance(v, (str, bytes, list, dict)) and len(v) == 0)
    }


class RequestLogger:
    """Buffers request log entries into rotating, compressed segments."""

    def __init__(
        self,
        config: RequestLoggingConfig | None = None,
        directory: Path | None = None,
    ) -> None:
        self.config = config or RequestLoggingConfig()
        self._directory = directory or TEMP_DIR
        self.enabled = self.config.enabled and check_writable_fs(self._directory)
        if self.config.enabled and not self.enabled:
            logger.warning(
                "Request logging disabled: %s is not writable", self._directory
            )
        self.suspend_until: float | None = None
        self._closed = False

        self._lock = threading.Lock()
        self._segment: list[bytes] = []
        self._segment_bytes = 0
        self._sealed: deque[list[bytes]] = deque()
        self._files_lock = threading.Lock()
        self._files: deque[TempGzipFile] = deque()
        self._dropped_segments = 0

        self._exclude_paths = _compile(self.config.exclude_paths, EXCLUDE_PATH_PATTERNS)
        self._mask_query_params = _compile(
            self.config.mask_query_params, MASK_QUERY_PARAM_PATTERNS
        )
        self._mask_headers = _compile(self.config.mask_headers, MASK_HEADER_PATTERNS)
        self._mask_body_fields = _compile(
            self.config.mask_body_fields, MASK_BODY_FIELD_PATTERNS
        )

    # =========================================================================
    # REQUEST PATH
    # =========================================================================

    @property
    def is_suspended(self) -> bool:
        return self.suspend_until is not None and self.suspend_until > time.time()

    def suspend(self, seconds: float = SUSPEND_SECONDS) -> None:
        """Stop accepting entries for a while (e.g. hub quota exceeded)."""
        self.suspend_until = time.time() + seconds

    def log_request(
        self,
        request: RequestInfo,
        response: ResponseInfo,
        exception: BaseException | None = None,
        logs: Sequence[LogRecord] | None = None,
    ) -> None:
        """Build, redact and buffer one request log entry. Never raises."""
        if not self.enabled or self.is_suspended:
            return
        try:
            entry = self._build_entry(request, response, exception, logs)
            if entry is None:
                return
            line = json.dumps(entry, separators=(",", ":"), default=str).encode("utf-8")
        except Exception:
            logger.debug("Failed to build request log entry", exc_info=True)
            return
        self._append(line)

    def _append(self, line: bytes) -> None:
        line_size = len(line) + 1
        with self._lock:
            if self._segment and (
                len(self._segment) + 1 > self.config.max_segment_entries
                or self._segment_bytes + line_size > self.config.max_segment_bytes
            ):
                self._seal_locked()
            self._segment.append(line)
            self._segment_bytes += line_size

    def _seal_locked(self) -> None:
        if not self._segment:
            return
        self._sealed.append(self._segment)
        self._segment = []
        self._segment_bytes = 0
        # Bound memory if the sync thread is not keeping up.
        while len(self._sealed) > max(1, self.config.max_files):
            self._sealed.popleft()
            self._dropped_segments += 1

    def _should_exclude(self, path: str, request: RequestInfo, response: ResponseInfo) -> bool:
        if _matches(path, self._exclude_paths):
            return True
        callback = self.config.exclude_callback
        if callback is None:
            return False
        try:
            return bool(callback(request, response))
        except Exception:
            logger.debug("Request log exclude callback failed", exc_info=True)
            return False

    def _mask_query(self, query: str) -> str:
        params = parse_qsl(query, keep_blank_values=True)
        return urlencode(
            [(k, MASKED if _matches(k, self._mask_query_params) else v) for k, v in params],
            safe="*",
        )

    def _mask_header_values(self, headers: Sequence[Header]) -> list[list[str]]:
        return [
            [k, MASKED if _matches(k, self._mask_headers) else v] for k, v in headers
        ]

    def _mask_fields(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: (
                    MASKED
                    if isinstance(k, str)
                    and _matches(k, self._mask_body_fields)
                    and isinstance(v, (str, int, float))
                    else self._mask_fields(v)
                )
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [self._mask_fields(item) for item in data]
        return data

    def _process_body(
        self,
        body: bytes | None,
        content_type: str | None,
        enabled: bool,
        callback: BodyCallback | None,
        request: RequestInfo,
        response: ResponseInfo,
    ) -> bytes | None:
        if not enabled or body is None or not is_supported_content_type(content_type):
            return None
        if len(body) > self.config.max_body_size:
            return None
        if callback is not None:
            try:
                masked = callback(request, response)
            except Exception:
                logger.debug("Body masking callback failed", exc_info=True)
                return None
            if masked is None:
                return BODY_MASKED
            body = masked
        if _is_json_content_type(content_type) and body:
            try:
                parsed = json.loads(body)
            except ValueError:
                return body
            masked_data = self._mask_fields(parsed)
            if masked_data != parsed:
                body = json.dumps(masked_data, ensure_ascii=False).encode("utf-8")
        return body

    def _build_entry(
        self,
        request: RequestInfo,
        response: ResponseInfo,
        exception: BaseException | None,
        logs: Sequence[LogRecord] | None,
    ) -> dict[str, Any] | None:
        config = self.config
        url_parts = urlsplit(request.url)
        path = request.path if request.path is not None else url_parts.path
        if self._should_exclude(path, request, response):
            return None

        query = self._mask_query(url_parts.query) if config.log_query_params else ""
        url = urlunsplit(
            (url_parts.scheme, url_parts.netloc, url_parts.path, query, url_parts.fragment)
        )

        request_body = self._process_body(
            request.body,
            request.header("content-type"),
            config.log_request_body,
            config.mask_request_body_callback,
            request,
            response,
        )
        response_body = self._process_body(
            response.body,
            response.header("content-type"),
            config.log_response_body,
            config.mask_response_body_callback,
            request,
            response,
        )

        entry: dict[str, Any] = {
            "uuid": str(uuid.uuid4()),
            "request": _skip_empty(
                {
                    "timestamp": request.timestamp,
                    "method": request.method.upper(),
                    "path": path,
                    "url": url,
                    "headers": (
                        self._mask_header_values(request.headers)
                        if config.log_request_headers
                        else None
                    ),
                    "size": request.size,
                    "consumer": request.consumer,
                    "body": _b64(request_body),
                }
            ),
            "response": _skip_empty(
                {
                    "status_code": response.status_code,
                    "response_time": response.response_time,
                    "headers": (
                        self._mask_header_values(response.headers)
                        if config.log_response_headers
                        else None
                    ),
                    "size": response.size,
                    "body": _b64(response_body),
                }
            ),
        }
        if exception is not None:
            entry["exception"] = {
                "type": type(exception).__name__,
                "message": truncate_message(str(exception)),
                "traceback": truncate_traceback(format_traceback(exception)),
            }
        if logs and config.capture_logs:
            entry["logs"] = [
                {**record.to_dict(), "message": record.message[:MAX_LOG_MESSAGE_LENGTH]}
                for record in logs
            ]
        return entry

    # =========================================================================
    # SYNC THREAD
    # =========================================================================

    @property
    def pending_file_count(self) -> int:
        return len(self._files)

    @property
    def dropped_segment_count(self) -> int:
        return self._dropped_segments

    def _compress_sealed(self) -> None:
        while True:
            with self._lock:
                if not self._sealed:
                    return
                segment = self._sealed.popleft()
            file: TempGzipFile | None = None
            try:
                file = TempGzipFile(directory=self._directory)
                try:
                    for line in segment:
                        file.write_line(line)
                finally:
                    file.close()
            except OSError as e:
                logger.warning("Failed to write request log segment: %s", e)
                if file is not None:
                    with contextlib.suppress(OSError):
                        file.delete()
                continue
            with self._files_lock:
                self._files.append(file)

    def rotate_file(self) -> None:
        """Seal the active segment regardless of size and compress it."""
        with self._lock:
            self._seal_locked()
        self._compress_sealed()

    def get_file(self) -> TempGzipFile | None:
        """Claim the oldest compressed segment, if any."""
        with self._files_lock:
            return self._files.popleft() if self._files else None

    def retry_file_later(self, file: TempGzipFile) -> None:
        """Return a claimed file to the front of the queue."""
        with self._files_lock:
            self._files.appendleft(file)

    def maintain(self) -> None:
        """Compress sealed segments, enforce file retention, lift expired suspension."""
        self._compress_sealed()
        with self._files_lock:
            excess = [
                self._files.popleft()
                for _ in range(max(0, len(self._files) - self.config.max_files))
            ]
        for file in excess:
            logger.debug("Dropping undelivered request log file %s", file.uuid)
            file.delete()
        if self.suspend_until is not None and self.suspend_until <= time.time():
            self.suspend_until = None

    def clear(self) -> None:
        """Drop all buffered entries and delete all pending files."""
        with self._lock:
            self._segment = []
            self._segment_bytes = 0
            self._sealed.clear()
        with self._files_lock:
            files, self._files = list(self._files), deque()
        for file in files:
            file.delete()

    def close(self, flush: bool = True) -> None:
        """Stop accepting entries.

        With ``flush`` the partial segment is compressed into a pending file,
        otherwise it is dropped.
        """
        if self._closed:
            return
        self._closed = True
        self.enabled = False
        if flush:
            self.rotate_file()
        else:
            with self._lock:
                self._segment = []
                self._segment_bytes = 0


def _b64(body: bytes | None) -> str | None:
    if body is None:
        return None
    return base64.b64encode(body).decode("ascii")
