"""Process-wide apiwatch client.

The client owns every piece of telemetry state (counters, registries, the
request logger) and one daemon thread running its own asyncio loop. That loop
hosts the startup handshake, the periodic sync and the API key refresh, so the
host application's request path never waits on network or disk I/O, whatever
concurrency model the host uses.

Example:
    client = init_client(client_id="...", env="prod")
    client.set_startup_data(paths=[PathInfo(method="GET", path="/users")])

    # in the framework adapter, after each request
    client.record_request(request_info, response_info, consumer="user-42")
"""

import asyncio
import atexit
import contextlib
import logging
import re
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, TypeVar

from apiwatch._version import __version__
from apiwatch.config import Settings, get_settings
from apiwatch.contracts import PathInfo, StartupPayload, SyncPayload
from apiwatch.engine.consumers import Consumer, ConsumerRegistry
from apiwatch.engine.errors import ServerErrorCounter, ValidationErrorCounter
from apiwatch.engine.hub_api import HubAPI, HubRequestError, InvalidClientIdError
from apiwatch.engine.keys import KeyRegistry
from apiwatch.engine.request_counter import RequestCounter
from apiwatch.engine.request_log import RequestLogger, RequestLoggingConfig
from apiwatch.sdk.log_capture import install_capture_handler, uninstall_capture_handler
from apiwatch.sdk.versions import get_versions
from apiwatch.types import LogRecord, RequestInfo, ResponseInfo

logger = logging.getLogger(__name__)

CLIENT_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
ENV_PATTERN = re.compile(r"^[\w-]{1,32}$")
KEYS_STALE_WARNING_SECONDS = 3600

T = TypeVar("T")

ConsumerLike = Consumer | Mapping[str, Any] | str | None

_client_singleton: "Client | None" = None
_singleton_lock = threading.Lock()


def is_valid_client_id(client_id: str | None) -> bool:
    return bool(client_id) and bool(CLIENT_ID_PATTERN.match(client_id))


def is_valid_env(env: str | None) -> bool:
    return bool(env) and bool(ENV_PATTERN.match(env))


def _drain_or_drop(drain: Callable[[], T], empty: T) -> T:
    try:
        return drain()
    except Exception:
        logger.warning("Dropping collector data that could not be drained", exc_info=True)
        return empty


class Client:
    """Owns telemetry state and synchronizes it with the hub."""

    def __init__(
        self,
        client_id: str | None = None,
        env: str | None = None,
        *,
        request_logging_config: RequestLoggingConfig | None = None,
        sync_api_keys: bool | None = None,
        app_version: str | None = None,
        settings: Settings | None = None,
        hub: HubAPI | None = None,
        log_directory: Path | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self.client_id = client_id if client_id is not None else settings.client_id
        self.env = env if env is not None else settings.env
        self.app_version = app_version or settings.app_version
        self.sync_api_keys = (
            settings.sync_api_keys if sync_api_keys is None else sync_api_keys
        )
        self.instance_uuid = str(uuid.uuid4())

        if settings.debug:
            logging.getLogger("apiwatch").setLevel(logging.DEBUG)

        self.enabled = True
        if not is_valid_client_id(self.client_id):
            logger.error(
                "Invalid apiwatch client id '%s' (expecting UUID format), "
                "telemetry disabled",
                self.client_id,
            )
            self.enabled = False
        elif not is_valid_env(self.env):
            logger.error(
                "Invalid apiwatch env '%s' (expecting 1-32 alphanumeric characters, "
                "underscores and hyphens), telemetry disabled",
                self.env,
            )
            self.enabled = False

        self.request_counter = RequestCounter(
            max_keys=settings.max_counter_keys,
            response_time_buckets_ms=settings.response_time_buckets_ms,
            size_buckets_kb=settings.size_buckets_kb,
        )
        self.server_error_counter = ServerErrorCounter(max_keys=settings.max_counter_keys)
        self.validation_error_counter = ValidationErrorCounter(
            max_keys=settings.max_counter_keys
        )
        self.consumer_registry = ConsumerRegistry(max_consumers=settings.max_consumers)
        self.key_registry = KeyRegistry()

        logging_config = request_logging_config or settings.request_logging_config()
        if not self.enabled:
            logging_config = RequestLoggingConfig(enabled=False)
        self.request_logger = RequestLogger(logging_config, directory=log_directory)
        self._capture_handler_installed = False
        if self.request_logger.enabled and logging_config.capture_logs:
            install_capture_handler()
            self._capture_handler_installed = True

        self._hub = hub or HubAPI(
            f"{settings.hub_url.rstrip('/')}/v2/{self.client_id}/{self.env}",
            timeout_seconds=settings.request_timeout_seconds,
            user_agent=f"apiwatch-python/{__version__}",
        )
        self._startup_payload: StartupPayload | None = None
        self._startup_sent = False
        self._keys_failing_since: float | None = None

        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._loop_ready = threading.Event()
        self._startup_task: asyncio.Task[bool] | None = None
        self._shut_down = False

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def startup_sent(self) -> bool:
        return self._startup_sent

    # =========================================================================
    # REQUEST PATH
    # =========================================================================

    def record_request(
        self,
        request: RequestInfo,
        response: ResponseInfo,
        *,
        exception: BaseException | None = None,
        consumer: ConsumerLike = None,
        logs: Sequence[LogRecord] | None = None,
        validation_errors: Iterable[Mapping[str, Any]] | None = None,
    ) -> None:
        """Feed one handled request into all collectors. Never raises.

        ``request.path`` must be the route template; requests without one
        (unmatched routes) are logged but not counted.
        """
        if not self.enabled:
            return
        try:
            identified = self.consumer_registry.add_or_update_consumer(consumer)
            if identified is not None:
                request.consumer = identified.identifier
            consumer_id = request.consumer
            method = request.method
            path = request.path

            if path is not None:
                self.request_counter.record(
                    consumer_id,
                    method,
                    path,
                    response.status_code,
                    response.response_time,
                    request_size=request.size,
                    response_size=response.size,
                )
                if exception is not None:
                    self.server_error_counter.record_exception(
                        consumer_id, method, path, exception
                    )
                for error in validation_errors or ():
                    self._record_validation_error(consumer_id, method, path, error)

            self.request_logger.log_request(request, response, exception, logs)
        except Exception:
            logger.debug("Failed to record request", exc_info=True)

    def _record_validation_error(
        self, consumer: str | None, method: str, path: str, error: Any
    ) -> None:
        try:
            self.validation_error_counter.record(
                consumer,
                method,
                path,
                loc=error.get("loc", ()),
                msg=error.get("msg", ""),
                type=error.get("type", ""),
            )
        except Exception:
            logger.debug("Ignoring malformed validation error", exc_info=True)

    # =========================================================================
    # STARTUP HANDSHAKE
    # =========================================================================

    def set_startup_data(
        self,
        paths: Iterable[PathInfo | Mapping[str, str]],
        versions: Mapping[str, str] | None = None,
        client: str = "python:custom",
    ) -> None:
        """Announce the app's routes and component versions to the hub."""
        if not self.enabled:
            return
        try:
            all_versions = get_versions(app_version=self.app_version)
            all_versions.update(versions or {})
            self._startup_payload = StartupPayload(
                instance_uuid=self.instance_uuid,
                message_uuid=str(uuid.uuid4()),
                paths=[
                    p if isinstance(p, PathInfo) else PathInfo.model_validate(p)
                    for p in paths
                ],
                versions=all_versions,
                client=client,
            )
        except Exception:
            logger.debug("Invalid startup data", exc_info=True)
            return
        self._startup_sent = False
        self._schedule_startup()

    def _schedule_startup(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(self._start_startup_task)

    def _start_startup_task(self) -> None:
        if self._startup_sent:
            return
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
        self._startup_task = asyncio.create_task(
            self.send_startup_data(), name="apiwatch-startup"
        )

    async def send_startup_data(self) -> bool:
        """Send startup data, retrying with exponential backoff.

        Gives up silently after ``startup_retry_attempts`` attempts.
        """
        payload = self._startup_payload
        if not self.enabled or payload is None:
            return False
        settings = self._settings
        attempts = max(1, settings.startup_retry_attempts)
        base_delay = max(0.0, settings.startup_retry_base_seconds)
        max_delay = max(base_delay, settings.startup_retry_max_seconds)

        for attempt in range(attempts):
            try:
                await self._hub.send_startup(payload)
                self._startup_sent = True
                return True
            except InvalidClientIdError:
                self._disable_invalid_client_id()
                return False
            except Exception as e:
                logger.debug(
                    "Error while sending startup data (attempt %d/%d): %s",
                    attempt + 1,
                    attempts,
                    e,
                )
                if attempt + 1 >= attempts:
                    break
                delay = min(max_delay, base_delay * (2**attempt))
                if delay > 0:
                    await asyncio.sleep(delay)

        logger.warning("Giving up on sending startup data after %d attempts", attempts)
        return False

    # =========================================================================
    # SYNC
    # =========================================================================

    def _drain_payload(self) -> SyncPayload:
        return SyncPayload(
            timestamp=time.time(),
            instance_uuid=self.instance_uuid,
            message_uuid=str(uuid.uuid4()),
            requests=_drain_or_drop(self.request_counter.drain, []),
            server_errors=_drain_or_drop(self.server_error_counter.drain, []),
            validation_errors=_drain_or_drop(self.validation_error_counter.drain, []),
            consumers=_drain_or_drop(self.consumer_registry.drain, []),
            api_key_usage=_drain_or_drop(self.key_registry.drain_usage, {}),
        )

    async def sync(self) -> None:
        """Drain all collectors, send the result and upload pending log files.

        Drained data that fails to send is dropped; log files are kept for the
        next tick.
        """
        if not self.enabled:
            return
        try:
            payload = self._drain_payload()
        except Exception:
            logger.warning("Dropping sync data that could not be serialized", exc_info=True)
            payload = None
        if payload is not None and not payload.is_empty:
            try:
                await self._hub.send_sync(payload)
            except InvalidClientIdError:
                self._disable_invalid_client_id()
                return
            except Exception as e:
                logger.debug("Dropping sync data after send failure: %s", e)
        await self.send_log_files()

    async def send_log_files(self) -> int:
        """Rotate the request log and upload pending files. Returns files sent."""
        request_logger = self.request_logger
        request_logger.rotate_file()
        request_logger.maintain()

        sent = 0
        for _ in range(max(1, self._settings.log_files_per_sync)):
            file = request_logger.get_file()
            if file is None:
                break
            try:
                content = file.get_content()
            except OSError as e:
                logger.warning("Discarding unreadable request log file: %s", e)
                file.delete()
                continue
            try:
                await self._hub.send_log_file(file.uuid, content)
            except InvalidClientIdError:
                request_logger.retry_file_later(file)
                self._disable_invalid_client_id()
                break
            except HubRequestError as e:
                if e.status == 402:
                    logger.warning(
                        "Request log quota exceeded, suspending request logging"
                    )
                    file.delete()
                    request_logger.suspend()
                    request_logger.clear()
                else:
                    logger.debug("Error while sending request log file: %s", e)
                    request_logger.retry_file_later(file)
                break
            except Exception as e:
                logger.debug("Error while sending request log file: %s", e)
                request_logger.retry_file_later(file)
                break
            file.delete()
            sent += 1
        return sent

    async def refresh_keys(self) -> bool:
        """Refresh the API key snapshot from the hub."""
        if not self.enabled:
            return False
        ok = await self.key_registry.refresh(self._hub)
        now = time.time()
        if ok:
            self._keys_failing_since = None
            return True
        if self._keys_failing_since is None:
            self._keys_failing_since = now
        if not self.key_registry.is_ready:
            logger.error("Initial API key sync failed, all keys will be rejected")
        elif now - self._keys_failing_since > KEYS_STALE_WARNING_SECONDS:
            logger.warning("API key sync has been failing for more than 1 hour")
        return False

    def _disable_invalid_client_id(self) -> None:
        logger.error(
            "Invalid apiwatch client id '%s', stopping telemetry", self.client_id
        )
        self.enabled = False
        if self._stop_event is not None:
            self._stop_event.set()

    # =========================================================================
    # BACKGROUND LOOP
    # =========================================================================

    async def _sync_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._settings.sync_interval_seconds)
                await self.sync()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.warning("Unexpected error while syncing with hub", exc_info=True)

    async def _keys_loop(self) -> None:
        while True:
            try:
                ok = await self.refresh_keys()
                await asyncio.sleep(
                    self._settings.keys_refresh_interval_seconds
                    if ok
                    else self._settings.keys_retry_interval_seconds
                )
            except asyncio.CancelledError:
                break
            except Exception:
                logger.warning("Unexpected error while refreshing API keys", exc_info=True)
                await asyncio.sleep(self._settings.keys_retry_interval_seconds)

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._loop_ready.set()

        tasks = [asyncio.create_task(self._sync_loop(), name="apiwatch-sync")]
        if self.sync_api_keys:
            tasks.append(asyncio.create_task(self._keys_loop(), name="apiwatch-keys"))
        if self._startup_payload is not None and not self._startup_sent:
            self._start_startup_task()

        try:
            await self._stop_event.wait()
        finally:
            if self._startup_task is not None:
                tasks.append(self._startup_task)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._final_sync()

    async def _final_sync(self) -> None:
        if self.enabled:
            try:
                await asyncio.wait_for(
                    self.sync(), timeout=self._settings.shutdown_timeout_seconds
                )
            except TimeoutError:
                logger.warning("Final sync did not finish before shutdown timeout")
            except Exception:
                logger.debug("Final sync failed", exc_info=True)
        await self._hub.close()

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run())
        except Exception:
            logger.error("apiwatch sync thread stopped unexpectedly", exc_info=True)
        finally:
            self._loop_ready.set()

    def _final_sync_thread(self) -> None:
        try:
            asyncio.run(self._final_sync())
        except Exception:
            logger.error("apiwatch final sync failed", exc_info=True)

    def start(self) -> None:
        """Start the background sync thread (no-op when disabled or running)."""
        if not self.enabled or self._thread is not None or self._shut_down:
            return
        self._thread = threading.Thread(
            target=self._run_thread, name="apiwatch-sync", daemon=True
        )
        self._thread.start()
        atexit.register(self.shutdown)

    def shutdown(self) -> None:
        """Stop background work after one last bounded sync. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        atexit.unregister(self.shutdown)

        thread = self._thread
        if thread is not None:
            self._loop_ready.wait(timeout=1.0)
            loop, stop_event = self._loop, self._stop_event
            if loop is not None and stop_event is not None and not loop.is_closed():
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(stop_event.set)
            thread.join(timeout=self._settings.shutdown_timeout_seconds + 1.0)
            if thread.is_alive():
                logger.warning("apiwatch sync thread did not stop in time, abandoning it")
        elif self.enabled:
            # shutdown may be called from inside a running event loop
            thread = threading.Thread(
                target=self._final_sync_thread, name="apiwatch-final-sync", daemon=True
            )
            thread.start()
            thread.join(timeout=self._settings.shutdown_timeout_seconds + 1.0)

        # Whatever the final sync could not deliver is dropped.
        self.request_logger.close(flush=False)
        self.request_logger.clear()
        if self._capture_handler_installed:
            uninstall_capture_handler()
            self._capture_handler_installed = False


def init_client(
    client_id: str | None = None,
    env: str | None = None,
    *,
    start: bool = True,
    **kwargs: Any,
) -> Client:
    """Create the process-wide client, or return the existing one."""
    global _client_singleton
    with _singleton_lock:
        if _client_singleton is not None:
            existing = _client_singleton
            if (client_id is not None and client_id != existing.client_id) or (
                env is not None and env != existing.env
            ):
                logger.warning(
                    "apiwatch client is already initialized, ignoring new configuration"
                )
            return existing
        client = Client(client_id, env, **kwargs)
        _client_singleton = client
    if start:
        client.start()
    return client


def get_client() -> Client:
    """Get the process-wide client, creating it from settings on first use."""
    client = _client_singleton
    if client is None:
        client = init_client()
    return client


def reset_client() -> None:
    """Shut down and forget the process-wide client (test teardown hook)."""
    global _client_singleton
    with _singleton_lock:
        client, _client_singleton = _client_singleton, None
    if client is not None:
        client.shutdown()
