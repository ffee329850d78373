"""Upstream dispatch with rate-limit retry.

One :class:`Dispatcher` is shared by the server, but every call gets its
own :class:`RetryState`; nothing mutable is shared between requests.

Retry policy:
  - Only the Anthropic messages family retries; every other family gets a
    budget of zero.
  - Only HTTP 429 is retried, following a fixed 8-step delay schedule.
    Once the schedule is used up, the last response is returned as-is,
    even if it is still a 429.
  - Connection errors and timeouts are never retried; they surface as
    :class:`TransportError`.

The dispatcher does not log.  Callers observe retries through ``on_retry``.
"""

from __future__ import annotations

import asyncio
import json as _json
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from aiohttp import ClientResponse, ClientSession, ClientTimeout

from provider_shim.policy.schema import ShimConfig
from provider_shim.proxy.transform import EndpointFamily

RETRY_DELAYS_MS: tuple[int, ...] = (1000, 2000, 4000, 8000, 12000, 18000, 24000, 32000)

RETRYABLE_FAMILIES = frozenset({EndpointFamily.ANTHROPIC_MESSAGES})

RATE_LIMITED = 429


class TransportError(Exception):
    """Raised when the upstream could not be reached or timed out.

    Attributes:
        kind: ``"connection"`` or ``"timeout"``.
        code: Stable error code surfaced to HTTP clients.
    """

    code = "ERR_UPSTREAM_FAILED"

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


@dataclass
class RetryState:
    """Retry bookkeeping for one inbound request's upstream call(s).

    Attributes:
        family: Endpoint family of the inbound request.
        max_retries: Retry budget, fixed when the state is created.
        attempt: Index of the attempt currently in flight (0-based).
        delays_ms: Delays consumed so far, in order.
    """

    family: EndpointFamily
    max_retries: int
    attempt: int = 0
    delays_ms: list[int] = field(default_factory=list)

    @classmethod
    def for_family(cls, family: EndpointFamily) -> RetryState:
        budget = len(RETRY_DELAYS_MS) if family in RETRYABLE_FAMILIES else 0
        return cls(family=family, max_retries=budget)

    @property
    def enabled(self) -> bool:
        return self.max_retries > 0

    def schedule(self) -> tuple[int, ...]:
        """Delays available to this request, one per possible retry."""
        return RETRY_DELAYS_MS[: self.max_retries]


class UpstreamResponse:
    """Final upstream response handed back to the server for relaying.

    The body has not been read yet; callers either stream it with
    :meth:`iter_body` or call :meth:`read`, and must :meth:`release` it
    when done.
    """

    def __init__(self, response: ClientResponse, retry_state: RetryState) -> None:
        self._response = response
        self.retry_state = retry_state

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def headers(self) -> Mapping[str, str]:
        return self._response.headers

    async def iter_body(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.content.iter_any():
            yield chunk

    async def read(self) -> bytes:
        return await self._response.read()

    def release(self) -> None:
        self._response.release()


RetryCallback = Callable[[RetryState, int, int], None]


class Dispatcher:
    """Sends requests to the upstream and applies the retry policy.

    Args:
        session: aiohttp session used for every attempt.
        sleep: Coroutine used for retry waits.  Must not block the loop.
        on_retry: Called as ``on_retry(state, status, delay_ms)`` before
            each retry wait.
    """

    def __init__(
        self,
        session: ClientSession,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: RetryCallback | None = None,
    ) -> None:
        self._session = session
        self._sleep = sleep
        self._on_retry = on_retry

    async def dispatch(
        self,
        url: str,
        method: str,
        headers: Mapping[str, str],
        body: dict[str, Any] | None,
        config: ShimConfig,
        family: EndpointFamily,
    ) -> UpstreamResponse:
        """Call the upstream, retrying rate-limited attempts.

        Args:
            url: Full upstream URL.
            method: ``"POST"`` (JSON body) or ``"GET"`` (no body).
            headers: Outbound headers.
            body: JSON body for POST, ignored for GET.
            config: Supplies the per-attempt and end-to-end timeouts.
            family: Endpoint family; decides the retry budget.

        Returns:
            The final upstream response, whatever its status.

        Raises:
            TransportError: On connection failure or timeout.
        """
        state = RetryState.for_family(family)
        payload = None
        if method == "POST" and body is not None:
            payload = _json.dumps(body, separators=(",", ":")).encode()

        run = self._run(state, url, method, headers, payload, config)
        if config.end_to_end_timeout_ms is None:
            return await run
        try:
            return await asyncio.wait_for(run, timeout=config.end_to_end_timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise TransportError(
                "timeout",
                f"Upstream did not answer within {config.end_to_end_timeout_ms} ms "
                f"(after {state.attempt + 1} attempt(s))",
            ) from e

    async def _run(
        self,
        state: RetryState,
        url: str,
        method: str,
        headers: Mapping[str, str],
        payload: bytes | None,
        config: ShimConfig,
    ) -> UpstreamResponse:
        timeout = ClientTimeout(total=config.request_timeout_ms / 1000)

        for delay_ms in state.schedule():
            response = await self._send(url, method, headers, payload, timeout, config)
            if response.status != RATE_LIMITED:
                return UpstreamResponse(response, state)

            response.release()
            if self._on_retry is not None:
                self._on_retry(state, response.status, delay_ms)
            state.delays_ms.append(delay_ms)
            await self._sleep(delay_ms / 1000)
            state.attempt += 1

        # Budget exhausted (or zero): the last attempt is final.
        response = await self._send(url, method, headers, payload, timeout, config)
        return UpstreamResponse(response, state)

    async def _send(
        self,
        url: str,
        method: str,
        headers: Mapping[str, str],
        payload: bytes | None,
        timeout: ClientTimeout,
        config: ShimConfig,
    ) -> ClientResponse:
        try:
            return await self._session.request(
                method,
                url,
                headers=dict(headers),
                data=payload,
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            # Checked first: aiohttp's timeout errors are also ClientErrors.
            raise TransportError(
                "timeout",
                f"Upstream request timed out after {config.request_timeout_ms} ms",
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError("connection", f"Upstream request failed: {e}") from e
