"""Streaming response assembly.

OpenAI-compatible backends send ``text/event-stream`` frames whose
``choices[0].delta`` carries text and/or tool-call fragments.  Text is
forwarded to the token callback as soon as its frame arrives; tool-call
fragments are concatenated per index until the stream ends.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Union

from chat_harness.cancel import CancelToken, check
from chat_harness.llm.json_repair import parse_arguments
from chat_harness.types import Completion, ToolCall, Usage

_logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Union[None, Awaitable[None]]]

_DONE = "[DONE]"


async def deliver(on_token: TokenCallback | None, text: str) -> None:
    """Invoke a sync or async token callback."""
    if on_token is None or not text:
        return
    result = on_token(text)
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------

async def iter_sse_json(
    lines: AsyncIterator[str],
    cancel: CancelToken | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded ``data:`` payloads until ``[DONE]`` or end of stream.

    ``event:``/``id:`` lines and comments are ignored; the payloads carry
    their own type fields where a backend needs them.
    """
    async for line in lines:
        check(cancel)
        line = line.strip()
        if not line or not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if payload == _DONE:
            return
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            _logger.debug("Skipping undecodable SSE payload: %r", payload[:200])
            continue
        if isinstance(frame, dict):
            yield frame


# ---------------------------------------------------------------------------
# Tool-call fragments
# ---------------------------------------------------------------------------

class ToolCallFragments:
    """Accumulate streamed tool-call fragments keyed by positional index.

    Each fragment may carry ``id`` and ``function.name`` (usually only the
    first one does) and a piece of ``function.arguments`` that must be
    concatenated in arrival order.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def feed(self, fragments: list[dict[str, Any]] | None) -> None:
        for position, tc in enumerate(fragments or []):
            idx = tc.get("index", position)
            func = tc.get("function") or {}
            entry = self._calls.setdefault(idx, {"id": "", "name": "", "arguments": ""})
            if tc.get("id") and not entry["id"]:
                entry["id"] = tc["id"]
            if func.get("name") and not entry["name"]:
                entry["name"] = func["name"]
            args = func.get("arguments")
            if isinstance(args, dict):
                args = json.dumps(args)
            if args:
                entry["arguments"] += args

    def has_calls(self) -> bool:
        return bool(self._calls)

    def finalize(self) -> list[ToolCall]:
        """Build complete calls, dropping fragments that never got a name."""
        result: list[ToolCall] = []
        for idx in sorted(self._calls):
            entry = self._calls[idx]
            if not entry["name"]:
                _logger.warning(
                    "Dropping tool-call fragment %d without a name (%d argument chars)",
                    idx, len(entry["arguments"]),
                )
                continue
            result.append(
                ToolCall(
                    name=entry["name"],
                    arguments=parse_arguments(entry["arguments"]),
                    id=entry["id"],
                    raw=entry["arguments"],
                )
            )
        return result


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class StreamAssembler:
    """Reassemble one OpenAI-compatible streamed completion.

    Parameters
    ----------
    on_token:
        Called once per non-empty ``delta.content``, in frame order.
    """

    def __init__(self, on_token: TokenCallback | None = None) -> None:
        self._on_token = on_token
        self._parts: list[str] = []
        self._fragments = ToolCallFragments()
        self._usage: Usage | None = None
        self._finish_reason = ""
        self.frames = 0

    async def feed(self, frame: dict[str, Any]) -> None:
        self.frames += 1
        # Later usage frames supersede earlier ones
        usage = Usage.from_openai(frame.get("usage"))
        if usage is not None:
            self._usage = usage

        choices = frame.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or choice.get("message") or {}
        text = delta.get("content")
        if isinstance(text, str) and text:
            self._parts.append(text)
            await deliver(self._on_token, text)
        self._fragments.feed(delta.get("tool_calls"))
        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]

    async def consume(
        self,
        lines: AsyncIterator[str],
        cancel: CancelToken | None = None,
    ) -> Completion:
        async for frame in iter_sse_json(lines, cancel):
            await self.feed(frame)
        return self.finish()

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def finish(self) -> Completion:
        return Completion(
            content=self.content,
            tool_calls=self._fragments.finalize(),
            usage=self._usage,
            finish_reason=self._finish_reason,
        )
