"""Starlette / FastAPI integration.

Pure ASGI middleware that feeds every HTTP request into the apiwatch client:
request counters, server errors, FastAPI validation errors, consumers and the
request log. Requests that match no route are logged but not counted.

Example:
    app = FastAPI()
    app.add_middleware(ApiwatchMiddleware, client_id="...", env="prod")

    @app.get("/items")
    async def items(request: Request):
        set_consumer(request, "customer-42", name="Customer 42")
        ...
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from starlette.requests import Request
from starlette.routing import Match, Mount, Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from apiwatch.contracts import PathInfo
from apiwatch.engine.consumers import Consumer
from apiwatch.engine.request_counter import parse_size
from apiwatch.engine.request_log import RequestLoggingConfig
from apiwatch.sdk.body_capture import BodyCapture
from apiwatch.sdk.client import Client, ConsumerLike, init_client
from apiwatch.sdk.log_capture import capture_logs
from apiwatch.sdk.versions import get_versions
from apiwatch.types import Header, RequestInfo, ResponseInfo

logger = logging.getLogger(__name__)

CONSUMER_STATE_KEY = "apiwatch_consumer"


def set_consumer(
    request: Request,
    identifier: str,
    name: str | None = None,
    group: str | None = None,
) -> None:
    """Identify the caller of the current request."""
    request.state.apiwatch_consumer = Consumer.from_value(
        {"identifier": identifier, "name": name, "group": group}
    )


def list_routes(app: Any) -> list[PathInfo]:
    """Flatten an app's HTTP routes (including mounted routers) into PathInfo."""
    return _collect_routes(getattr(app, "routes", None) or [], "")


def _collect_routes(routes: list[Any], prefix: str) -> list[PathInfo]:
    paths: list[PathInfo] = []
    for route in routes:
        if isinstance(route, Mount):
            paths.extend(_collect_routes(route.routes or [], prefix + route.path))
        elif isinstance(route, Route) and route.methods:
            for method in sorted(route.methods):
                if method == "HEAD":
                    continue
                paths.append(PathInfo(method=method, path=prefix + route.path))
    return paths


def resolve_path_template(scope: Scope) -> str | None:
    """Route template of the handled request, or None if no route matched.

    ``scope`` must be the scope as the root app received it. Routers rewrite
    ``root_path`` and ``route`` while dispatching, so templates are always
    resolved from the root app's routes, mount prefixes included. Partial
    (method not allowed) matches count as unmatched.
    """
    routes = getattr(scope.get("app"), "routes", None)
    if routes:
        return _match_routes(routes, scope, "")
    route = scope.get("route")
    if route is None:
        return None
    match, _ = route.matches(scope)
    if match != Match.FULL:
        return None
    template = getattr(route, "path", None)
    return template if isinstance(template, str) and template.startswith("/") else None


def _match_routes(routes: list[Any], scope: Scope, prefix: str) -> str | None:
    for route in routes:
        if isinstance(route, Mount):
            match, child_scope = route.matches(scope)
            if match == Match.FULL:
                found = _match_routes(
                    route.routes or [], {**scope, **child_scope}, prefix + route.path
                )
                if found is not None:
                    return found
        elif isinstance(route, Route):
            match, _ = route.matches(scope)
            if match == Match.FULL:
                return prefix + route.path
    return None


def extract_validation_errors(body: bytes | None) -> list[dict[str, Any]]:
    """Pull FastAPI-style validation errors out of a 422 response body."""
    if not body:
        return []
    try:
        data = json.loads(body)
    except ValueError:
        return []
    detail = data.get("detail") if isinstance(data, dict) else None
    if not isinstance(detail, list):
        return []
    return [
        error
        for error in detail
        if isinstance(error, dict) and "loc" in error and "msg" in error and "type" in error
    ]


def _state_consumer(scope: Scope) -> ConsumerLike:
    state = scope.get("state")
    if isinstance(state, dict):
        return state.get(CONSUMER_STATE_KEY)
    return getattr(state, CONSUMER_STATE_KEY, None)


def _decode_headers(raw: list[tuple[bytes, bytes]]) -> list[Header]:
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in raw]


class ApiwatchMiddleware:
    """ASGI middleware recording every HTTP request with the apiwatch client."""

    def __init__(
        self,
        app: ASGIApp,
        client_id: str | None = None,
        env: str | None = None,
        *,
        request_logging_config: RequestLoggingConfig | None = None,
        app_version: str | None = None,
        identify_consumer: Callable[[Request], ConsumerLike] | None = None,
        client: Client | None = None,
    ) -> None:
        self.app = app
        self.client = client or init_client(
            client_id,
            env,
            request_logging_config=request_logging_config,
            app_version=app_version,
        )
        self.identify_consumer = identify_consumer
        self._startup_data_sent = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self.app(scope, self._lifespan_receive(scope, receive), send)
            return
        if scope["type"] != "http" or not self.client.enabled:
            await self.app(scope, receive, send)
            return

        if not self._startup_data_sent:
            self._send_startup_data(scope.get("app"))
        await self._handle_http(scope, receive, send)

    def _lifespan_receive(self, scope: Scope, receive: Receive) -> Receive:
        async def wrapped() -> Message:
            message = await receive()
            if message["type"] == "lifespan.startup":
                self._send_startup_data(scope.get("app"))
            return message

        return wrapped

    def _send_startup_data(self, app: Any) -> None:
        if self._startup_data_sent:
            return
        self._startup_data_sent = True
        is_fastapi = type(app).__module__.startswith("fastapi") if app is not None else False
        self.client.set_startup_data(
            paths=list_routes(app) if app is not None else [],
            versions=get_versions("fastapi", "starlette"),
            client="python:fastapi" if is_fastapi else "python:starlette",
        )

    async def _handle_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        request_logger = self.client.request_logger
        config = request_logger.config
        log_bodies = request_logger.enabled
        request_capture = BodyCapture(
            capture_body=log_bodies and config.log_request_body,
            max_body_size=config.max_body_size,
        )
        response_capture = BodyCapture(
            capture_body=log_bodies and config.log_response_body,
            max_body_size=config.max_body_size,
        )
        response_status: int | None = None
        response_headers: list[Header] = []

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                request_capture.feed(message.get("body", b""))
                if not message.get("more_body", False):
                    request_capture.finish()
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal response_status, response_headers
            if message["type"] == "http.response.start":
                response_status = message["status"]
                response_headers = _decode_headers(message.get("headers", []))
                # validation errors are read from the body of 422 responses
                if response_status == 422:
                    response_capture.capture_body = True
            elif message["type"] == "http.response.body":
                response_capture.feed(message.get("body", b""))
                if not message.get("more_body", False):
                    response_capture.finish()
            await send(message)

        route_scope = dict(scope)
        timestamp = time.time()
        start = time.perf_counter()
        exception: Exception | None = None
        with capture_logs() as records:
            try:
                await self.app(scope, receive_wrapper, send_wrapper)
            except Exception as e:
                exception = e
                raise
            finally:
                response_time = time.perf_counter() - start
                try:
                    self._record(
                        scope,
                        route_scope=route_scope,
                        timestamp=timestamp,
                        response_time=response_time,
                        status_code=response_status if response_status is not None else 500,
                        response_headers=response_headers,
                        request_capture=request_capture,
                        response_capture=response_capture,
                        exception=exception,
                        logs=list(records),
                    )
                except Exception:
                    # Never fail requests for tracking.
                    logger.debug("Failed to record request", exc_info=True)

    def _record(
        self,
        scope: Scope,
        *,
        route_scope: Scope,
        timestamp: float,
        response_time: float,
        status_code: int,
        response_headers: list[Header],
        request_capture: BodyCapture,
        response_capture: BodyCapture,
        exception: Exception | None,
        logs: list[Any],
    ) -> None:
        request = Request(scope)
        request_headers = _decode_headers(scope.get("headers", []))
        request_size = (
            request_capture.size
            if request_capture.completed
            else parse_size(request.headers.get("content-length"))
        )
        consumer = self._get_consumer(request)

        response_body = response_capture.body
        validation_errors = (
            extract_validation_errors(response_body) if status_code == 422 else []
        )

        request_info = RequestInfo(
            timestamp=timestamp,
            method=scope["method"],
            url=str(request.url),
            path=resolve_path_template(route_scope),
            headers=request_headers,
            size=request_size,
            body=request_capture.body,
        )
        response_info = ResponseInfo(
            status_code=status_code,
            response_time=response_time,
            headers=response_headers,
            size=response_capture.size,
            body=response_body,
        )
        self.client.record_request(
            request_info,
            response_info,
            exception=exception,
            consumer=consumer,
            logs=logs,
            validation_errors=validation_errors,
        )

    def _get_consumer(self, request: Request) -> ConsumerLike:
        consumer = _state_consumer(request.scope)
        if consumer is None and self.identify_consumer is not None:
            try:
                consumer = self.identify_consumer(request)
            except Exception:
                logger.debug("Consumer identification callback failed", exc_info=True)
                return None
        return consumer
