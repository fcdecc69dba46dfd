"""HTTP transport shared by every adapter.

Wraps ``httpx.AsyncClient`` with the failure policy adapters rely on:

- connection failures become :class:`BackendConnectionError` with a hint;
- 401/403, 404, 429 and tool-related 400s map to specific exceptions;
- 502/503 answers that say the model is still loading are retried with
  exponential backoff, then raise :class:`ModelLoadingError`;
- every await is raced against the turn's cancel token.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import httpx

from chat_harness import cancel as cancellation
from chat_harness.cancel import CancelToken
from chat_harness.errors import (
    AuthenticationError,
    BackendConnectionError,
    BackendHTTPError,
    BackendProtocolError,
    EndpointNotFoundError,
    ModelLoadingError,
    RateLimitError,
    ToolSchemaError,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry configuration for "model loading" answers
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4

_LOADING_MARKERS = ("loading model", "model is loading", "loading", "currently loading")
_TOOL_MARKERS = ("tool", "unsupported param", "function")


def is_loading_response(status: int, body: str) -> bool:
    return status in (502, 503) and any(m in body.lower() for m in _LOADING_MARKERS)


def error_for_status(
    backend: str, status: int, body: str, *, tools_sent: bool = False,
) -> BackendHTTPError:
    """Map a non-2xx answer to the matching exception."""
    lower = body.lower()
    if status in (401, 403):
        return AuthenticationError(
            backend, status, body, "Authentication failed",
            "check the API key for this backend",
        )
    if status == 404:
        return EndpointNotFoundError(
            backend, status, body, "Endpoint or model not found",
            "check the base URL and model name",
        )
    if status == 429:
        return RateLimitError(
            backend, status, body, "Rate limit exceeded", "wait a moment and retry",
        )
    if status == 400 and tools_sent and any(m in lower for m in _TOOL_MARKERS):
        return ToolSchemaError(
            backend, status, body, "Backend rejected the tool definitions",
            "the model or server may not support tool calling "
            "(llama.cpp needs --jinja)",
        )
    if status == 502:
        return BackendHTTPError(
            backend, status, body, "Bad gateway from backend server",
            "the server may have crashed; restart it",
        )
    return BackendHTTPError(backend, status, body)


class HttpTransport:
    """Async JSON/SSE transport for one backend.

    Parameters
    ----------
    backend:
        Display name used in error messages.
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests pass one with a
        ``MockTransport``).  A client created here is closed by
        :meth:`aclose`.
    timeout:
        Request timeout in seconds.
    """

    def __init__(
        self,
        backend: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        max_retries: int = _MAX_RETRIES,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self.backend = backend
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30),
        )
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        *,
        cancel: CancelToken | None = None,
        tools_sent: bool = False,
    ) -> Any:
        """POST *payload* and return the decoded JSON body."""

        async def once() -> tuple[int, str, Any]:
            resp = await self._client.post(url, json=payload, headers=headers)
            if resp.status_code >= 400:
                return resp.status_code, resp.text, None
            return resp.status_code, "", self._decode(resp)

        return await self._with_retries(url, once, cancel, tools_sent)

    async def get_json(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> Any:
        async def once() -> tuple[int, str, Any]:
            resp = await self._client.get(url, headers=headers, params=params)
            if resp.status_code >= 400:
                return resp.status_code, resp.text, None
            return resp.status_code, "", self._decode(resp)

        return await self._with_retries(url, once, cancel, False)

    async def get_status(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> tuple[int, str]:
        """Single GET returning (status, body) without any error mapping."""
        try:
            resp = await cancellation.race(
                cancel, self._client.get(url, headers=headers),
            )
        except httpx.TransportError as exc:
            raise self._connection_error(url, exc) from exc
        return resp.status_code, resp.text

    async def stream(
        self,
        url: str,
        payload: dict[str, Any],
        handler: Callable[[AsyncIterator[str]], Awaitable[T]],
        headers: dict[str, str] | None = None,
        *,
        cancel: CancelToken | None = None,
        tools_sent: bool = False,
    ) -> T:
        """POST *payload* and hand the response lines to *handler*.

        Retries only happen before the first line is read, so the token
        callback never sees a repeated prefix.
        """

        async def once() -> tuple[int, str, Any]:
            async with self._client.stream(
                "POST", url, json=payload, headers=headers,
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    return resp.status_code, body, None
                return resp.status_code, "", await handler(resp.aiter_lines())

        return await self._with_retries(url, once, cancel, tools_sent)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _with_retries(
        self,
        url: str,
        once: Callable[[], Awaitable[tuple[int, str, Any]]],
        cancel: CancelToken | None,
        tools_sent: bool,
    ) -> Any:
        for attempt in range(self.max_retries):
            cancellation.check(cancel)
            try:
                status, body, result = await cancellation.race(cancel, once())
            except httpx.TransportError as exc:
                raise self._connection_error(url, exc) from exc

            if status < 400:
                return result
            if is_loading_response(status, body):
                _logger.warning(
                    "%s is loading the model (HTTP %d, attempt %d/%d), retrying...",
                    self.backend, status, attempt + 1, self.max_retries,
                )
                if attempt < self.max_retries - 1:
                    await cancellation.sleep(cancel, self.backoff_base * (2 ** attempt))
                continue
            raise error_for_status(self.backend, status, body, tools_sent=tools_sent)

        raise ModelLoadingError(
            self.backend, "Model loading timed out",
            "wait for the server to finish loading, then retry",
        )

    def _decode(self, resp: httpx.Response) -> Any:
        if not resp.content:
            raise BackendProtocolError(self.backend, "Empty response body")
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendProtocolError(
                self.backend, f"Invalid JSON response: {resp.text[:200]}",
            ) from exc

    def _connection_error(self, url: str, exc: Exception) -> BackendConnectionError:
        if isinstance(exc, httpx.TimeoutException):
            message = f"Request to {url} timed out"
            hint = "the server may be overloaded; try again or raise request_timeout"
        else:
            message = f"Cannot reach {url}: {exc}"
            hint = "server not reachable; check that it is running and the base URL is right"
        return BackendConnectionError(self.backend, message, hint)
