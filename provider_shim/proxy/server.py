"""Local forwarding proxy for OpenRouter provider routing.

Sits between agent harnesses and OpenRouter.  Every forwarded request gets
the upstream credential and the configured ``provider`` routing policy
written into it; the response is relayed back byte for byte.

Architecture:
  Claude Code / OpenAI-compatible harness
    → HTTP POST http://127.0.0.1:{port}/v1/messages (or chat/responses)
  provider-shim
    → transform body, merge provider policy
    → HTTPS POST https://openrouter.ai/api/v1/messages
      ← JSON or SSE response
    ← relayed unchanged
"""

from __future__ import annotations

import asyncio
import json as _json
import signal
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from sys import platform as _platform
from typing import Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout, web
from rich.console import Console

from provider_shim.audit.logger import AuditLogger
from provider_shim.policy.merge import PolicyConflictError
from provider_shim.policy.schema import AuthMode, ShimConfig
from provider_shim.policy.validation import (
    validate_body_size,
    validate_local_auth,
    validate_method,
)
from provider_shim.proxy.dispatch import (
    Dispatcher,
    RetryState,
    TransportError,
    UpstreamResponse,
)
from provider_shim.proxy.transform import (
    EndpointFamily,
    detect_family,
    family_path,
    transform_and_merge,
)

_console = Console(stderr=True)

SERVICE_NAME = "provider-shim"

_CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, OPTIONS",
    "access-control-allow-headers": "authorization, content-type, x-api-key",
}

# Upstream response headers relayed to the client.
_RELAYED_HEADERS = ("cache-control", "x-request-id")

_ANTHROPIC_KEY_PREFIX = "sk-ant-"


def upstream_url_for(path: str, config: ShimConfig) -> str | None:
    """Upstream URL for an inbound path, or None if the path isn't forwarded."""
    family = detect_family(path)
    if family is None:
        return None
    enabled = {
        EndpointFamily.ANTHROPIC_MESSAGES: config.enable_anthropic,
        EndpointFamily.CHAT_COMPLETIONS: config.enable_chat,
        EndpointFamily.RESPONSES: config.enable_responses,
        EndpointFamily.MODELS: True,
    }[family]
    if not enabled:
        return None
    return config.upstream_base_url.rstrip("/") + path[len("/v1"):]


def get_inbound_auth(headers: Mapping[str, str]) -> str | None:
    """Caller's credential as an ``Authorization`` header value."""
    auth = headers.get("authorization")
    if auth and auth.strip():
        return auth
    api_key = headers.get("x-api-key")
    if api_key and api_key.strip():
        if api_key.lower().startswith("bearer "):
            return api_key
        return f"Bearer {api_key}"
    return None


def resolve_upstream_auth(headers: Mapping[str, str], config: ShimConfig) -> str | None:
    """Pick the ``Authorization`` value sent upstream.

    upstream-key mode always uses the configured key.  Passthrough mode
    forwards the caller's credential, except when it is the local shim key
    or an Anthropic key, which OpenRouter would reject; the configured
    upstream key is used instead.
    """
    upstream = f"Bearer {config.upstream_api_key}" if config.upstream_api_key else None
    if config.auth_mode == AuthMode.UPSTREAM_KEY or config.local_api_key:
        return upstream

    inbound = get_inbound_auth(headers)
    if inbound is None:
        return upstream
    token = inbound[7:] if inbound.startswith("Bearer ") else inbound
    if token.startswith(_ANTHROPIC_KEY_PREFIX) and upstream is not None:
        return upstream
    return inbound


def build_upstream_headers(auth: str, config: ShimConfig) -> dict[str, str]:
    headers = {
        "authorization": auth,
        "content-type": "application/json",
    }
    if config.add_attribution_headers and config.attribution is not None:
        if config.attribution.referer:
            headers["http-referer"] = config.attribution.referer
        if config.attribution.title:
            headers["x-title"] = config.attribution.title
    return headers


def _error_response(status: int, message: str, code: str | None = None) -> web.Response:
    error: dict[str, Any] = {"message": message}
    if code:
        error["code"] = code
    return web.json_response({"error": error}, status=status)


def _model_of(body: dict[str, Any] | None) -> str:
    if not body:
        return "unknown"
    model = body.get("model")
    if isinstance(model, str):
        return model
    models = body.get("models")
    if isinstance(models, list) and models and isinstance(models[0], str):
        return models[0]
    return "unknown"


class ShimProxy:
    """HTTP proxy that injects provider routing policy into LLM requests.

    Args:
        config: Resolved shim configuration.
        audit_logger: Destination for request and lifecycle events.
        session: Optional pre-built client session (tests).  When omitted a
            session is created lazily and closed on shutdown.
        sleep: Retry wait coroutine handed to the dispatcher.
    """

    def __init__(
        self,
        config: ShimConfig,
        *,
        audit_logger: AuditLogger,
        session: ClientSession | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._audit_logger = audit_logger
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._dispatcher: Dispatcher | None = None

    @property
    def config(self) -> ShimConfig:
        return self._config

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self._config.max_body_bytes)
        app.router.add_route("*", "/{path_info:.*}", self._handle_request)
        return app

    async def run(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Start the proxy and block until shutdown.

        Args:
            shutdown_event: Optional external event to trigger shutdown.  If
                *None*, the proxy registers its own signal handlers.
        """
        # Cancel the handler (and its upstream call) when the client goes away.
        runner = web.AppRunner(self.build_app(), handler_cancellation=True)
        await runner.setup()

        site = web.TCPSite(runner, self._config.host, self._config.port)
        try:
            await site.start()
        except OSError as e:
            if e.errno in (48, 98) or "address already in use" in str(e).lower():
                msg = f"Port {self._config.port} is already in use"
            else:
                msg = f"Cannot bind to {self._config.host}:{self._config.port}: {e}"
            _console.print(f"[bold red]Error:[/bold red] {msg}", highlight=False)
            await runner.cleanup()
            raise

        own_event = shutdown_event is None
        if shutdown_event is None:
            shutdown_event = asyncio.Event()

        if own_event and _platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, shutdown_event.set)

        try:
            self._audit_logger.log_startup(self._config)
            await shutdown_event.wait()
            self._audit_logger.log_shutdown("shutdown requested")
        finally:
            await self.close()
            await runner.cleanup()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._dispatcher = None

    async def _get_dispatcher(self) -> Dispatcher:
        if self._session is None or self._session.closed:
            # Per-attempt total timeouts are set by the dispatcher; the
            # session only bounds the TCP/TLS handshake.
            self._session = ClientSession(timeout=ClientTimeout(total=None, connect=30))
            self._owns_session = True
            self._dispatcher = None
        if self._dispatcher is None:
            self._dispatcher = Dispatcher(
                self._session, sleep=self._sleep, on_retry=self._on_retry
            )
        return self._dispatcher

    def _on_retry(self, state: RetryState, status: int, delay_ms: int) -> None:
        self._audit_logger.log_retry(family_path(state.family), state.attempt, status, delay_ms)

    # ------------------------------------------------------------------
    # Request routing
    # ------------------------------------------------------------------

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        started = time.monotonic()
        path = request.path
        try:
            return await self._route(request, started)
        except Exception as e:  # noqa: BLE001
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._audit_logger.log_error(path, elapsed_ms, str(e))
            return _error_response(500, str(e) or type(e).__name__, "ERR_INTERNAL")

    async def _route(self, request: web.Request, started: float) -> web.StreamResponse:
        path = request.path
        method = request.method
        config = self._config

        if method == "GET" and path == "/healthz":
            return web.json_response({
                "ok": True,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
        if method == "GET" and path == "/version":
            return web.json_response({"name": SERVICE_NAME, "version": config.version})
        if method == "GET" and path == "/config":
            return web.json_response(config.safe_dump())
        if method == "OPTIONS":
            return web.Response(status=200, headers=_CORS_HEADERS)

        upstream_url = upstream_url_for(path, config)
        family = detect_family(path)
        if upstream_url is None or family is None:
            return _error_response(404, "Not found")

        failure = validate_local_auth(request.headers, config.local_api_key)
        if failure is None:
            failure = validate_method(method, path)
        if failure is not None:
            return _error_response(failure.status, failure.message, failure.code)

        auth = resolve_upstream_auth(request.headers, config)
        if auth is None:
            return _error_response(401, "Missing upstream authentication", "ERR_MISSING_AUTH")

        body: dict[str, Any] | None = None
        if method == "POST":
            body_or_error = await self._read_body(request)
            if isinstance(body_or_error, web.Response):
                return body_or_error
            inbound = body_or_error

            if config.log_body:
                self._audit_logger.log_request_body(path, inbound, redact=config.redact_body)

            try:
                body = transform_and_merge(inbound, config, family)
            except PolicyConflictError as e:
                self._audit_logger.log_policy_conflict(path, e.field, str(e))
                return _error_response(422, str(e), e.code)

        if request.query_string:
            upstream_url = f"{upstream_url}?{request.query_string}"

        dispatcher = await self._get_dispatcher()
        try:
            upstream = await dispatcher.dispatch(
                upstream_url,
                method,
                build_upstream_headers(auth, config),
                body,
                config,
                family,
            )
        except TransportError as e:
            self._audit_logger.log_upstream_error(path, upstream_url, e.kind, str(e))
            return _error_response(502, str(e), e.code)

        response = await self._relay(request, upstream, upstream_url)

        self._audit_logger.log_request(
            method,
            path,
            upstream.status,
            int((time.monotonic() - started) * 1000),
            _model_of(body),
            attempts=upstream.retry_state.attempt + 1,
        )
        return response

    async def _read_body(self, request: web.Request) -> dict[str, Any] | web.Response:
        """Read and parse the JSON body, or build the error response."""
        max_bytes = self._config.max_body_bytes
        if request.content_length is not None:
            failure = validate_body_size(request.content_length, max_bytes)
            if failure is not None:
                return _error_response(failure.status, failure.message, failure.code)

        try:
            raw = await request.read()
        except web.HTTPRequestEntityTooLarge:
            return _error_response(
                413, f"Body too large (> {max_bytes} bytes)", "ERR_BODY_TOO_LARGE"
            )

        failure = validate_body_size(len(raw), max_bytes)
        if failure is not None:
            return _error_response(failure.status, failure.message, failure.code)

        text = raw.decode("utf-8", errors="replace")
        if not text.strip():
            return {}
        try:
            parsed = _json.loads(text)
        except ValueError:
            return _error_response(400, "Invalid JSON body", "ERR_INVALID_BODY")
        if not isinstance(parsed, dict):
            return _error_response(400, "JSON body must be an object", "ERR_INVALID_BODY")
        return parsed

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def _relay(
        self,
        request: web.Request,
        upstream: UpstreamResponse,
        upstream_url: str,
    ) -> web.StreamResponse:
        """Stream the upstream response to the caller unchanged."""
        response = web.StreamResponse(status=upstream.status)
        response.headers["content-type"] = upstream.headers.get(
            "content-type", "application/json"
        )
        for name in _RELAYED_HEADERS:
            value = upstream.headers.get(name)
            if value:
                response.headers[name] = value

        try:
            await response.prepare(request)
            async for chunk in upstream.iter_body():
                await response.write(chunk)
            await response.write_eof()
        except ConnectionResetError:
            pass  # client went away mid-stream
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            # Headers are already sent; what was relayed stays relayed.
            self._audit_logger.log_upstream_error(
                request.path, upstream_url, "stream", f"Upstream stream interrupted: {e}"
            )
        finally:
            upstream.release()
        return response
