"""Shared data types for Chat Harness."""

from __future__ import annotations

import enum
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

@dataclass
class ContentItem:
    """One typed piece of message content."""

    type: str  # "text" or "image_url"
    text: str = ""
    image_url: str = ""  # URL or data URL (data:image/png;base64,...)

    @property
    def is_image(self) -> bool:
        return self.type == "image_url" and bool(self.image_url)


MessageContent = Union[str, list[ContentItem]]


def content_text(content: MessageContent) -> str:
    """Flatten message content to plain text (images are dropped)."""
    if isinstance(content, str):
        return content
    return " ".join(item.text for item in content if item.type == "text" and item.text)


def content_images(content: MessageContent) -> list[str]:
    if isinstance(content, str):
        return []
    return [item.image_url for item in content if item.is_image]


@dataclass
class Message:
    """A conversation message.

    ``tool_calls`` is set on assistant messages that requested tools;
    ``tool_call_id``/``name`` are set on ``role="tool"`` result messages.
    """

    role: str  # system, user, assistant, tool
    content: MessageContent = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    name: str = ""
    is_error: bool = False

    @property
    def text(self) -> str:
        return content_text(self.content)

    @property
    def images(self) -> list[str]:
        return content_images(self.content)

    @property
    def is_tool_artifact(self) -> bool:
        """True for assistant tool-call messages and tool results."""
        return self.role == "tool" or (self.role == "assistant" and bool(self.tool_calls))

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        """Build a Message from an OpenAI-style ``{"role", "content"}`` dict."""
        content = raw.get("content") or ""
        if isinstance(content, list):
            items: list[ContentItem] = []
            for part in content:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "image_url":
                    url = part.get("image_url", "")
                    if isinstance(url, dict):
                        url = url.get("url", "")
                    items.append(ContentItem(type="image_url", image_url=url))
                else:
                    items.append(ContentItem(type="text", text=part.get("text", "")))
            content = items
        calls = [
            ToolCall.from_openai(tc) for tc in raw.get("tool_calls") or []
        ]
        return cls(
            role=raw.get("role", "user"),
            content=content,
            tool_calls=calls,
            tool_call_id=raw.get("tool_call_id", ""),
            name=raw.get("name", ""),
        )


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class ToolSpec:
    """A tool definition with a JSON-schema parameter block."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: dict(_EMPTY_SCHEMA))

    @classmethod
    def from_any(cls, raw: Any) -> ToolSpec | None:
        """Normalize the nested shapes tool listers hand us.

        Accepts ``{"type": "function", "function": {...}}``, flat
        ``{"name", "description", "parameters"}``, MCP-style
        ``inputSchema`` and Anthropic-style ``input_schema``.
        """
        if isinstance(raw, ToolSpec):
            return raw
        if not isinstance(raw, dict):
            return None
        func = raw.get("function") if isinstance(raw.get("function"), dict) else {}
        name = raw.get("name") or func.get("name") or ""
        if not name:
            return None
        description = raw.get("description") or func.get("description") or ""
        params = (
            raw.get("parameters")
            or func.get("parameters")
            or raw.get("inputSchema")
            or raw.get("input_schema")
            or dict(_EMPTY_SCHEMA)
        )
        return cls(name=name, description=description, parameters=params)

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_prompt_description(self) -> str:
        """Generate a text description for prompt-based tool calling."""
        props = self.parameters.get("properties", {}) or {}
        required = set(self.parameters.get("required", []) or [])
        params_desc: list[str] = []
        for pname, prop in props.items():
            req = "required" if pname in required else "optional"
            ptype = prop.get("type", "any") if isinstance(prop, dict) else "any"
            line = f"  - {pname} ({ptype}, {req})"
            desc = prop.get("description", "") if isinstance(prop, dict) else ""
            if desc:
                line += f": {desc}"
            if isinstance(prop, dict) and prop.get("enum"):
                line += f" (options: {', '.join(str(e) for e in prop['enum'])})"
            params_desc.append(line)
        params_str = "\n".join(params_desc) if params_desc else "  (none)"
        return f"### {self.name}\n{self.description}\nParameters:\n{params_str}"


@dataclass
class ToolCall:
    """A tool invocation requested by the model, plus its outcome once run."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = ""
    result: str | None = None
    error: bool = False
    error_kind: str = ""
    execution_time_ms: float | None = None
    raw: str = ""

    @property
    def has_result(self) -> bool:
        return self.result is not None

    def canonical_key(self) -> str:
        """Identity used for de-duplication: name plus sorted arguments."""
        return f"{self.name}:{json.dumps(self.arguments, sort_keys=True, default=str)}"

    def ensure_id(self) -> str:
        if not self.id:
            self.id = f"call_{uuid.uuid4().hex[:12]}"
        return self.id

    @classmethod
    def from_openai(cls, raw: dict[str, Any]) -> ToolCall:
        func = raw.get("function", {}) or {}
        args = func.get("arguments", {})
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError:
                args = {}
        return cls(
            name=func.get("name", ""),
            arguments=args if isinstance(args, dict) else {},
            id=raw.get("id", "") or "",
        )


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Settings / response types
# ---------------------------------------------------------------------------

@dataclass
class ChatSettings:
    """Per-request chat parameters. Built by the caller, never stored."""

    model: str
    temperature: float = 0.7
    max_tokens: int = 4000
    api_key: str = ""
    base_url: str = ""
    system_prompt: str = ""
    tool_calling: bool = True
    stream: bool | None = None  # None: stream iff an on_token callback is given

    def wants_stream(self, has_callback: bool) -> bool:
        return has_callback if self.stream is None else self.stream


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    def __add__(self, other: Usage | None) -> Usage:
        if other is None:
            return Usage(
                self.prompt_tokens, self.completion_tokens,
                self.total_tokens, self.estimated,
            )
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated=self.estimated or other.estimated,
        )

    @classmethod
    def from_openai(cls, raw: dict[str, Any] | None) -> Usage | None:
        if not raw:
            return None
        prompt = int(raw.get("prompt_tokens", 0) or 0)
        completion = int(raw.get("completion_tokens", 0) or 0)
        total = int(raw.get("total_tokens", 0) or 0) or prompt + completion
        return cls(prompt, completion, total)


def sum_usage(items: list[Usage | None]) -> Usage | None:
    present = [u for u in items if u is not None]
    if not present:
        return None
    total = Usage()
    for u in present:
        total = total + u
    return total


@dataclass
class Completion:
    """One backend round trip: text, requested calls and reported usage."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str = ""


@dataclass
class Cost:
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    currency: str = "USD"


@dataclass
class UnifiedResponse:
    """Unified response from any backend, after all tool rounds."""

    content: str = ""
    usage: Usage | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    cost: Cost | None = None
    model: str = ""
    rounds: int = 0
    warnings: list[str] = field(default_factory=list)
    tool_summary: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types emitted while a turn is resolved."""

    # Turn lifecycle
    TURN_STARTED = "turn.started"
    TURN_DONE = "turn.done"
    TURN_CANCELLED = "turn.cancelled"
    TURN_ERROR = "turn.error"

    # LLM events
    LLM_REQUEST = "llm.request"
    LLM_RESPONSE = "llm.response"

    # Tool events
    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"

    # Resume loop
    LOOP_ROUND = "loop.round"
    LOOP_LIMIT = "loop.limit"


@dataclass
class HarnessEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
