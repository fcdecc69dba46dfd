"""Exception hierarchy and tool-failure classification."""

from __future__ import annotations

import asyncio
import enum
import re


class HarnessError(Exception):
    """Base class for every error raised by chat_harness."""


class UnknownBackendError(HarnessError, KeyError):
    def __init__(self, backend_id: str) -> None:
        self.backend_id = backend_id
        super().__init__(f"Unknown backend: {backend_id!r}")

    def __str__(self) -> str:
        return self.args[0]


class RequestCancelledError(HarnessError):
    def __init__(self, message: str = "Request cancelled") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Backend failures (fatal for the turn)
# ---------------------------------------------------------------------------

class BackendError(HarnessError):
    """A backend call failed in a way the turn cannot recover from.

    Parameters
    ----------
    backend:
        Display name of the backend (e.g. ``"LM Studio"``).
    message:
        What went wrong.
    hint:
        Remediation suggestion shown to the user, may be empty.
    """

    def __init__(self, backend: str, message: str, hint: str = "") -> None:
        self.backend = backend
        self.message = message
        self.hint = hint
        super().__init__(self._render())

    def _render(self) -> str:
        text = f"{self.backend}: {self.message}"
        if self.hint:
            text += f" ({self.hint})"
        return text


class BackendConnectionError(BackendError):
    pass


class BackendProtocolError(BackendError):
    pass


class ModelLoadingError(BackendError):
    pass


class BackendHTTPError(BackendError):
    def __init__(
        self, backend: str, status: int, body: str = "", message: str = "", hint: str = "",
    ) -> None:
        self.status = status
        self.body = body
        super().__init__(backend, message or f"HTTP {status}: {body[:300]}", hint)


class AuthenticationError(BackendHTTPError):
    pass


class EndpointNotFoundError(BackendHTTPError):
    pass


class ToolSchemaError(BackendHTTPError):
    pass


class RateLimitError(BackendHTTPError):
    pass


# ---------------------------------------------------------------------------
# Tool failure classification
# ---------------------------------------------------------------------------

class ToolErrorKind(enum.Enum):
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    INVALID_ARGUMENT = "invalid_argument"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    UNKNOWN = "unknown"


# Checked in order, first match wins
_KIND_PATTERNS: list[tuple[ToolErrorKind, re.Pattern[str]]] = [
    (ToolErrorKind.TIMEOUT, re.compile(r"time[d ]?\s*out|deadline exceeded", re.I)),
    (ToolErrorKind.RATE_LIMIT, re.compile(r"rate.?limit|too many requests|\b429\b|quota", re.I)),
    (ToolErrorKind.AUTH, re.compile(
        r"unauthori[sz]ed|forbidden|permission denied|api key|\b40[13]\b|auth", re.I,
    )),
    (ToolErrorKind.NOT_FOUND, re.compile(r"not found|no such|does not exist|\b404\b|enoent", re.I)),
    (ToolErrorKind.NETWORK, re.compile(
        r"network|connect|econnrefused|econnreset|dns|unreachable|socket", re.I,
    )),
    (ToolErrorKind.INVALID_ARGUMENT, re.compile(
        r"invalid|missing|required|argument|parameter|must be|expected", re.I,
    )),
]

_TYPE_KINDS: list[tuple[type[BaseException], ToolErrorKind]] = [
    (asyncio.TimeoutError, ToolErrorKind.TIMEOUT),
    (TimeoutError, ToolErrorKind.TIMEOUT),
    (FileNotFoundError, ToolErrorKind.NOT_FOUND),
    (PermissionError, ToolErrorKind.AUTH),
    (ConnectionError, ToolErrorKind.NETWORK),
    (TypeError, ToolErrorKind.INVALID_ARGUMENT),
    (ValueError, ToolErrorKind.INVALID_ARGUMENT),
]


def classify_tool_error(exc: BaseException | str) -> ToolErrorKind:
    """Classify a tool failure by exception type, then by message content."""
    if isinstance(exc, BaseException):
        message = str(exc)
        for exc_type, kind in _TYPE_KINDS:
            if isinstance(exc, exc_type):
                # Message text wins over the broad ValueError/TypeError buckets
                if kind is ToolErrorKind.INVALID_ARGUMENT:
                    by_text = _classify_text(message)
                    if by_text is not ToolErrorKind.UNKNOWN:
                        return by_text
                return kind
    else:
        message = exc
    return _classify_text(message)


def _classify_text(message: str) -> ToolErrorKind:
    for kind, pattern in _KIND_PATTERNS:
        if pattern.search(message):
            return kind
    return ToolErrorKind.UNKNOWN


def format_tool_error(exc: BaseException | str, kind: ToolErrorKind | None = None) -> str:
    """Render a tool failure as the text the model sees as the tool result."""
    kind = kind or classify_tool_error(exc)
    message = str(exc) or type(exc).__name__
    return f"Error ({kind.value}): {message}"
