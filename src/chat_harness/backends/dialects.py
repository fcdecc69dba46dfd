"""Wire grammars for each backend family.

A dialect turns the uniform conversation (``Message`` list, ``ToolSpec``
list, ``ChatSettings``) into one backend's request body and turns its
answers, streamed or not, back into a :class:`Completion`.  It also owns
how tool exchanges are written into history:

==========  ==============================================================
openai      assistant ``tool_calls`` + one ``role: tool`` message per call
anthropic   assistant ``tool_use`` blocks + a user message of
            ``tool_result`` blocks
gemini      model ``functionCall`` parts + user ``functionResponse`` parts
text        assistant text + one user "Tool results" message
==========  ==============================================================
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator

from chat_harness.cancel import CancelToken
from chat_harness.config import BackendDescriptor, CapabilityProfile
from chat_harness.llm.json_repair import parse_arguments
from chat_harness.llm.stream import (
    StreamAssembler,
    TokenCallback,
    ToolCallFragments,
    deliver,
    iter_sse_json,
)
from chat_harness.llm.text_utils import (
    ToolNameMap,
    clean_schema_for_gemini,
    sanitize_gemini_name,
    shorten_tool_name,
)
from chat_harness.types import (
    ChatSettings,
    Completion,
    ContentItem,
    Message,
    ToolCall,
    ToolSpec,
    Usage,
)

_logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"data:([^;,]+);base64,(.*)", re.DOTALL)


def split_data_url(url: str) -> tuple[str, str] | None:
    """``data:image/png;base64,AAA`` -> ``("image/png", "AAA")``."""
    m = _DATA_URL_RE.match(url)
    if not m:
        return None
    return m.group(1), m.group(2)


def _group_tool_results(messages: list[Message]) -> list[Message | list[Message]]:
    """Collapse runs of consecutive ``role="tool"`` messages into lists."""
    grouped: list[Message | list[Message]] = []
    for msg in messages:
        if msg.role == "tool":
            if grouped and isinstance(grouped[-1], list):
                grouped[-1].append(msg)
            else:
                grouped.append([msg])
        else:
            grouped.append(msg)
    return grouped


def _result_text(msg: Message) -> str:
    return msg.text or ("(error)" if msg.is_error else "(no output)")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Dialect:
    """Request/response grammar of one backend family."""

    name = "base"
    native_tools = True

    def headers(self, settings: ChatSettings, descriptor: BackendDescriptor) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(dict(descriptor.headers))
        return headers

    def chat_url(self, base_url: str, settings: ChatSettings, stream: bool) -> str:
        raise NotImplementedError

    def tool_schemas(
        self,
        tools: list[ToolSpec],
        names: ToolNameMap,
        capabilities: CapabilityProfile,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def build_payload(
        self,
        system: str,
        messages: list[Message],
        settings: ChatSettings,
        tool_schemas: list[dict[str, Any]],
        stream: bool,
        names: ToolNameMap,
        capabilities: CapabilityProfile,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, data: Any) -> Completion:
        raise NotImplementedError

    async def read_stream(
        self,
        lines: AsyncIterator[str],
        on_token: TokenCallback | None,
        cancel: CancelToken | None,
    ) -> Completion:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------

class OpenAIDialect(Dialect):
    """``POST {base}/chat/completions`` with OpenAI function calling."""

    name = "openai"

    def headers(self, settings: ChatSettings, descriptor: BackendDescriptor) -> dict[str, str]:
        headers = super().headers(settings, descriptor)
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        return headers

    def chat_url(self, base_url: str, settings: ChatSettings, stream: bool) -> str:
        return f"{base_url.rstrip('/')}/chat/completions"

    def tool_schemas(self, tools, names, capabilities):
        schemas = []
        for tool in tools:
            wire = tool.name
            if capabilities.max_tool_name_length:
                wire = shorten_tool_name(tool.name, capabilities.max_tool_name_length)
            schemas.append({
                "type": "function",
                "function": {
                    "name": names.add(tool.name, wire),
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            })
        return schemas

    def build_payload(self, system, messages, settings, tool_schemas, stream, names, capabilities):
        payload: dict[str, Any] = {
            "model": settings.model,
            "messages": self.render_messages(system, messages, names, capabilities),
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
            "stream": stream,
        }
        if tool_schemas:
            payload["tools"] = tool_schemas
            payload["tool_choice"] = "auto"
        return payload

    # -- history grammar ---------------------------------------------------

    def render_messages(
        self,
        system: str,
        messages: list[Message],
        names: ToolNameMap,
        capabilities: CapabilityProfile,
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        pending_system = ""
        if system:
            if capabilities.supports_system_messages:
                out.append({"role": "system", "content": system})
            else:
                pending_system = system
        for msg in messages:
            if msg.role == "system":
                out.append({"role": "system", "content": msg.text})
                continue
            rendered = self.render_message(msg, names)
            if pending_system and rendered.get("role") == "user":
                rendered["content"] = self._prefix(pending_system, rendered["content"])
                pending_system = ""
            out.append(rendered)
        return out

    @staticmethod
    def _prefix(system: str, content: Any) -> Any:
        if isinstance(content, str):
            return f"{system}\n\n{content}"
        return [{"type": "text", "text": system}, *content]

    def render_content(self, content: Any) -> Any:
        if isinstance(content, str):
            return content
        parts: list[dict[str, Any]] = []
        for item in content:
            if item.is_image:
                parts.append({"type": "image_url", "image_url": {"url": item.image_url}})
            elif item.text:
                parts.append({"type": "text", "text": item.text})
        return parts

    def render_message(self, msg: Message, names: ToolNameMap) -> dict[str, Any]:
        if msg.role == "tool":
            out = {
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": _result_text(msg),
            }
            if msg.name:
                out["name"] = names.wire(msg.name)
            return out
        if msg.role == "assistant" and msg.tool_calls:
            return {
                "role": "assistant",
                "content": msg.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": names.wire(call.name),
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in msg.tool_calls
                ],
            }
        return {"role": msg.role, "content": self.render_content(msg.content)}

    # -- responses ---------------------------------------------------------

    def parse_response(self, data: Any) -> Completion:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            return Completion(usage=Usage.from_openai((data or {}).get("usage")))
        choice = choices[0]
        message = choice.get("message") or {}
        calls = [
            ToolCall(
                name=(tc.get("function") or {}).get("name", ""),
                arguments=parse_arguments((tc.get("function") or {}).get("arguments")),
                id=tc.get("id", "") or "",
                raw=json.dumps(tc),
            )
            for tc in message.get("tool_calls") or []
        ]
        dropped = [c for c in calls if not c.name]
        if dropped:
            _logger.warning("Dropping %d tool call(s) without a name", len(dropped))
        return Completion(
            content=message.get("content") or "",
            tool_calls=[c for c in calls if c.name],
            usage=Usage.from_openai(data.get("usage")),
            finish_reason=choice.get("finish_reason") or "",
        )

    async def read_stream(self, lines, on_token, cancel):
        return await StreamAssembler(on_token).consume(lines, cancel)


class TextToolDialect(OpenAIDialect):
    """OpenAI-compatible wire, but tools live in the prompt and in plain text.

    No ``tools`` field is sent; tool exchanges are written back as an
    assistant text turn followed by a user message carrying the results.
    """

    name = "text"
    native_tools = False

    def tool_schemas(self, tools, names, capabilities):
        return []

    def render_messages(self, system, messages, names, capabilities):
        flattened: list[Message] = []
        for item in _group_tool_results(messages):
            if isinstance(item, list):
                blocks = [
                    f"### {m.name or 'tool'}{' (error)' if m.is_error else ''}\n{_result_text(m)}"
                    for m in item
                ]
                flattened.append(Message(
                    role="user",
                    content="Tool results:\n\n" + "\n\n".join(blocks)
                    + "\n\nUse these results to answer the original request.",
                ))
            elif item.role == "assistant" and item.tool_calls:
                text = item.text or "\n".join(
                    json.dumps({"tool_call": {"name": c.name, "arguments": c.arguments}})
                    for c in item.tool_calls
                )
                flattened.append(Message(role="assistant", content=text))
            else:
                flattened.append(item)
        return super().render_messages(system, flattened, names, capabilities)


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicDialect(Dialect):
    """``POST {base}/messages`` with ``tool_use`` / ``tool_result`` blocks."""

    name = "anthropic"

    def headers(self, settings, descriptor):
        headers = super().headers(settings, descriptor)
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if settings.api_key:
            headers["x-api-key"] = settings.api_key
        return headers

    def chat_url(self, base_url, settings, stream):
        return f"{base_url.rstrip('/')}/messages"

    def tool_schemas(self, tools, names, capabilities):
        limit = capabilities.max_tool_name_length
        return [
            {
                "name": names.add(
                    tool.name, shorten_tool_name(tool.name, limit) if limit else tool.name,
                ),
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def build_payload(self, system, messages, settings, tool_schemas, stream, names, capabilities):
        extra_system = [m.text for m in messages if m.role == "system" and m.text]
        system_text = "\n\n".join([s for s in [system, *extra_system] if s])
        payload: dict[str, Any] = {
            "model": settings.model,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "messages": self.render_messages(
                [m for m in messages if m.role != "system"], names,
            ),
            "stream": stream,
        }
        if system_text:
            payload["system"] = system_text
        if tool_schemas:
            payload["tools"] = tool_schemas
            payload["tool_choice"] = {"type": "auto"}
        return payload

    def render_content(self, content: Any) -> Any:
        if isinstance(content, str):
            return content
        blocks: list[dict[str, Any]] = []
        for item in content:
            if item.is_image:
                blocks.append(self._image_block(item))
            elif item.text:
                blocks.append({"type": "text", "text": item.text})
        return blocks

    @staticmethod
    def _image_block(item: ContentItem) -> dict[str, Any]:
        parsed = split_data_url(item.image_url)
        if parsed:
            media_type, data = parsed
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            }
        return {"type": "image", "source": {"type": "url", "url": item.image_url}}

    def render_messages(self, messages: list[Message], names: ToolNameMap) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for item in _group_tool_results(messages):
            if isinstance(item, list):
                out.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": m.tool_call_id,
                            "content": _result_text(m),
                            "is_error": m.is_error,
                        }
                        for m in item
                    ],
                })
            elif item.role == "assistant" and item.tool_calls:
                blocks: list[dict[str, Any]] = []
                if item.text:
                    blocks.append({"type": "text", "text": item.text})
                blocks.extend(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": names.wire(call.name),
                        "input": call.arguments,
                    }
                    for call in item.tool_calls
                )
                out.append({"role": "assistant", "content": blocks})
            else:
                out.append({"role": item.role, "content": self.render_content(item.content)})
        return out

    @staticmethod
    def _usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        prompt = int(raw.get("input_tokens", 0) or 0)
        completion = int(raw.get("output_tokens", 0) or 0)
        return Usage(prompt, completion, prompt + completion)

    def parse_response(self, data):
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for block in (data or {}).get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use" and block.get("name"):
                calls.append(ToolCall(
                    name=block["name"],
                    arguments=parse_arguments(block.get("input")),
                    id=block.get("id", ""),
                ))
        return Completion(
            content="".join(text_parts),
            tool_calls=calls,
            usage=self._usage(data.get("usage")),
            finish_reason=data.get("stop_reason") or "",
        )

    async def read_stream(self, lines, on_token, cancel):
        parts: list[str] = []
        fragments = ToolCallFragments()
        prompt_tokens = 0
        completion_tokens = 0
        seen_usage = False
        finish = ""
        async for event in iter_sse_json(lines, cancel):
            etype = event.get("type")
            if etype == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                if usage:
                    seen_usage = True
                    prompt_tokens = int(usage.get("input_tokens", 0) or 0)
                    completion_tokens = int(usage.get("output_tokens", 0) or 0)
            elif etype == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    fragments.feed([{
                        "index": event.get("index", 0),
                        "id": block.get("id", ""),
                        "function": {"name": block.get("name", ""), "arguments": ""},
                    }])
            elif etype == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    parts.append(delta["text"])
                    await deliver(on_token, delta["text"])
                elif delta.get("type") == "input_json_delta":
                    fragments.feed([{
                        "index": event.get("index", 0),
                        "function": {"arguments": delta.get("partial_json", "")},
                    }])
            elif etype == "message_delta":
                usage = event.get("usage") or {}
                if usage:
                    seen_usage = True
                    prompt_tokens = int(usage.get("input_tokens", prompt_tokens) or prompt_tokens)
                    completion_tokens = int(usage.get("output_tokens", 0) or 0)
                finish = (event.get("delta") or {}).get("stop_reason") or finish
            elif etype == "error":
                _logger.warning("Anthropic stream error event: %s", event.get("error"))
        usage_obj = (
            Usage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)
            if seen_usage else None
        )
        return Completion(
            content="".join(parts),
            tool_calls=fragments.finalize(),
            usage=usage_obj,
            finish_reason=finish,
        )


# ---------------------------------------------------------------------------
# Gemini generateContent
# ---------------------------------------------------------------------------

class GeminiDialect(Dialect):
    """``models/{model}:generateContent`` with function declarations."""

    name = "gemini"

    def headers(self, settings, descriptor):
        headers = super().headers(settings, descriptor)
        if settings.api_key:
            headers["x-goog-api-key"] = settings.api_key
        return headers

    def chat_url(self, base_url, settings, stream):
        model = settings.model.removeprefix("models/")
        method = "streamGenerateContent?alt=sse" if stream else "generateContent"
        return f"{base_url.rstrip('/')}/models/{model}:{method}"

    def tool_schemas(self, tools, names, capabilities):
        if not tools:
            return []
        declarations = [
            {
                "name": names.add(tool.name, sanitize_gemini_name(tool.name)),
                "description": tool.description or f"Tool: {tool.name}",
                "parameters": clean_schema_for_gemini(tool.parameters),
            }
            for tool in tools
        ]
        return [{"functionDeclarations": declarations}]

    def build_payload(self, system, messages, settings, tool_schemas, stream, names, capabilities):
        extra_system = [m.text for m in messages if m.role == "system" and m.text]
        system_text = "\n\n".join([s for s in [system, *extra_system] if s])
        payload: dict[str, Any] = {
            "contents": self.render_messages(
                [m for m in messages if m.role != "system"], names,
            ),
            "generationConfig": {
                "temperature": settings.temperature,
                "maxOutputTokens": settings.max_tokens,
            },
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        if tool_schemas:
            payload["tools"] = tool_schemas
        return payload

    @staticmethod
    def _parts(content: Any) -> list[dict[str, Any]]:
        if isinstance(content, str):
            return [{"text": content}] if content else []
        parts: list[dict[str, Any]] = []
        for item in content:
            if item.is_image:
                parsed = split_data_url(item.image_url)
                if parsed:
                    parts.append({"inline_data": {"mime_type": parsed[0], "data": parsed[1]}})
                else:
                    parts.append({"file_data": {"file_uri": item.image_url}})
            elif item.text:
                parts.append({"text": item.text})
        return parts

    def render_messages(self, messages: list[Message], names: ToolNameMap) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for item in _group_tool_results(messages):
            if isinstance(item, list):
                contents.append({
                    "role": "user",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": names.wire(m.name),
                                "response": {"content": _result_text(m)},
                            }
                        }
                        for m in item
                    ],
                })
            elif item.role == "assistant":
                parts = self._parts(item.content)
                parts.extend(
                    {"functionCall": {"name": names.wire(c.name), "args": c.arguments}}
                    for c in item.tool_calls
                )
                contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            else:
                contents.append({"role": "user", "parts": self._parts(item.content)})
        return contents

    @staticmethod
    def _usage(raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        prompt = int(raw.get("promptTokenCount", 0) or 0)
        completion = int(raw.get("candidatesTokenCount", 0) or 0)
        total = int(raw.get("totalTokenCount", 0) or 0) or prompt + completion
        return Usage(prompt, completion, total)

    @staticmethod
    def _candidate_parts(data: dict[str, Any]) -> tuple[list[dict[str, Any]], str]:
        candidates = data.get("candidates") or []
        if not candidates:
            return [], ""
        first = candidates[0]
        return (first.get("content") or {}).get("parts") or [], first.get("finishReason") or ""

    def parse_response(self, data):
        parts, finish = self._candidate_parts(data or {})
        text = "".join(p.get("text", "") for p in parts if "text" in p)
        calls = [
            ToolCall(
                name=p["functionCall"].get("name", ""),
                arguments=parse_arguments(p["functionCall"].get("args")),
            )
            for p in parts
            if isinstance(p.get("functionCall"), dict) and p["functionCall"].get("name")
        ]
        return Completion(
            content=text,
            tool_calls=calls,
            usage=self._usage((data or {}).get("usageMetadata")),
            finish_reason=finish,
        )

    async def read_stream(self, lines, on_token, cancel):
        texts: list[str] = []
        calls: list[ToolCall] = []
        usage: Usage | None = None
        finish = ""
        async for frame in iter_sse_json(lines, cancel):
            parts, frame_finish = self._candidate_parts(frame)
            finish = frame_finish or finish
            for part in parts:
                if part.get("text"):
                    texts.append(part["text"])
                    await deliver(on_token, part["text"])
                func = part.get("functionCall")
                if isinstance(func, dict) and func.get("name"):
                    calls.append(ToolCall(
                        name=func["name"], arguments=parse_arguments(func.get("args")),
                    ))
            frame_usage = self._usage(frame.get("usageMetadata"))
            if frame_usage is not None:
                usage = frame_usage
        return Completion(content="".join(texts), tool_calls=calls, usage=usage, finish_reason=finish)


_DIALECTS: dict[str, type[Dialect]] = {
    "openai": OpenAIDialect,
    "text": TextToolDialect,
    "anthropic": AnthropicDialect,
    "gemini": GeminiDialect,
}


def dialect_for(tool_format: str) -> Dialect:
    """Dialect instance for a capability profile's ``tool_format``."""
    cls = _DIALECTS.get(tool_format)
    if cls is None:
        raise ValueError(f"No chat dialect for tool format {tool_format!r}")
    return cls()
