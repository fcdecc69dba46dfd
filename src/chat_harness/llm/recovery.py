"""Recover tool calls from free text for backends without native tool calling.

Each recognizer handles one textual convention and returns either a list
of calls or ``None``.  :class:`ToolCallRecoverer` tries them in priority
order and stops at the first that yields anything; results are
de-duplicated by name plus canonical arguments.

Recovered calls carry no id.  The resume loop assigns ids, which keeps
recovery a pure function of its input text.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol, Sequence

from chat_harness.llm.json_repair import (
    extract_balanced,
    extract_key_values,
    find_objects,
    loads_lenient,
    parse_arguments,
)
from chat_harness.llm.text_utils import split_thinking
from chat_harness.types import ToolCall

_logger = logging.getLogger(__name__)

ERROR_RESPONSE_TOOL = "error_response"


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def unknown_tool_call(name: str, available: Sequence[str]) -> ToolCall:
    """Synthetic call telling the model *name* is not a real tool."""
    shown = list(available[:10])
    listing = ", ".join(shown) if shown else "(none)"
    if len(available) > len(shown):
        listing += f", and {len(available) - len(shown)} more"
    message = (
        f'Tool "{name}" does not exist. Available tools include: {listing}. '
        "Please use an exact tool name from the available list."
    )
    return ToolCall(
        name=ERROR_RESPONSE_TOOL,
        arguments={"error": message, "invalid_tool": name},
    )


def call_from_object(obj: Any, raw: str = "", *, allow_flat: bool = False) -> ToolCall | None:
    """Normalize one decoded JSON object into a ToolCall.

    Accepts ``{"tool_call": {...}}``, ``{"name", "arguments"}``,
    ``{"function": "name", "arguments"}`` and, with *allow_flat*,
    ``{"tool": "name", "args": {...}}`` / ``{"tool": "name", ...rest}``.
    """
    if not isinstance(obj, dict):
        return None
    if isinstance(obj.get("tool_call"), dict):
        return call_from_object(obj["tool_call"], raw)

    func = obj.get("function")
    if isinstance(func, dict) and func.get("name"):
        return ToolCall(
            name=func["name"], arguments=parse_arguments(func.get("arguments")), raw=raw,
        )

    name = obj.get("name")
    if not isinstance(name, str) and isinstance(func, str):
        name = func
    if isinstance(name, str) and name:
        for key in ("arguments", "args", "parameters"):
            if key in obj:
                return ToolCall(name=name, arguments=parse_arguments(obj[key]), raw=raw)

    tool = obj.get("tool")
    if allow_flat and isinstance(tool, str) and tool:
        if "args" in obj and len(obj) == 2:
            return ToolCall(name=tool, arguments=parse_arguments(obj["args"]), raw=raw)
        rest = {k: v for k, v in obj.items() if k != "tool"}
        return ToolCall(name=tool, arguments=rest, raw=raw)
    return None


def _calls_from_json_text(body: str, *, allow_flat: bool = False) -> list[ToolCall]:
    """Decode a block holding one object, an array, or several objects."""
    value = loads_lenient(body)
    items: list[Any]
    if isinstance(value, list):
        items = value
    elif value is not None:
        items = [value]
    else:
        items = [loads_lenient(o) for o in find_objects(body, r"\{")]
    calls: list[ToolCall] = []
    for item in items:
        call = call_from_object(item, body.strip(), allow_flat=allow_flat)
        if call is not None:
            calls.append(call)
    return calls


def dedupe(calls: list[ToolCall]) -> list[ToolCall]:
    """Drop repeated (name, arguments) pairs, keeping first-seen order."""
    seen: set[str] = set()
    unique: list[ToolCall] = []
    for call in calls:
        key = call.canonical_key()
        if key in seen:
            _logger.debug("Removed duplicate tool call: %s", call.name)
            continue
        seen.add(key)
        unique.append(call)
    return unique


# ---------------------------------------------------------------------------
# Recognizers
# ---------------------------------------------------------------------------

class Recognizer(Protocol):
    """One textual tool-call convention."""

    name: str

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        ...


class FencedToolBlock:
    """```tool / ```tool_call / ```function_call fenced blocks."""

    name = "fenced_tool_block"
    _PATTERN = re.compile(
        r"```(?:tool_call|function_call|tool)\b[ \t]*\n?(.*?)```", re.DOTALL | re.IGNORECASE,
    )

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        calls: list[ToolCall] = []
        for m in self._PATTERN.finditer(text):
            calls.extend(_calls_from_json_text(m.group(1)))
        return calls or None


class XmlToolCall:
    """``<tool_call><tool_name>N</tool_name><arguments>{...}</arguments></tool_call>``."""

    name = "xml_tool_call"
    _PATTERN = re.compile(
        r"<tool_call>\s*<tool_name>(.*?)</tool_name>\s*"
        r"<arguments>\s*(.*?)\s*</arguments>\s*</tool_call>",
        re.DOTALL,
    )

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        calls = [
            ToolCall(
                name=m.group(1).strip(),
                arguments=parse_arguments(m.group(2)),
                raw=m.group(0),
            )
            for m in self._PATTERN.finditer(text)
            if m.group(1).strip()
        ]
        return calls or None


class ToDirective:
    """``to=NAME json{...}`` and the nested ``to=functions json{"name":..}`` form.

    The nested form is tried first; otherwise ``functions`` would be read
    as the tool name.  A directive naming an unavailable tool short-circuits
    to a single corrective ``error_response`` call.
    """

    name = "to_directive"
    _NESTED = re.compile(r"(?:commentary\s+)?to=functions\s*json\s*(?=\{)")
    _PLAIN = re.compile(
        r"(?:commentary\s+)?to=(?:functions\.)?([A-Za-z_][\w-]*?)\s*json\s*(?=\{)"
    )

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        nested: list[ToolCall] = []
        for m in self._NESTED.finditer(text):
            body = extract_balanced(text, m.end())
            if not body:
                continue
            call = call_from_object(loads_lenient(body), m.group(0) + body)
            if call is not None:
                nested.append(call)
        if nested:
            return nested

        calls: list[ToolCall] = []
        for m in self._PLAIN.finditer(text):
            tool = m.group(1)
            if tool == "functions":
                continue
            if available_tools and tool not in available_tools:
                _logger.warning("Model referenced unknown tool %r", tool)
                return [unknown_tool_call(tool, available_tools)]
            body = extract_balanced(text, m.end()) or "{}"
            if re.fullmatch(r'\{\s*""\s*:\s*""\s*\}', body):
                body = "{}"
            calls.append(
                ToolCall(name=tool, arguments=parse_arguments(body), raw=m.group(0) + body)
            )
        return calls or None


class JsonWrappedToolCall:
    """A single ```json fenced block holding a ``tool_call`` object."""

    name = "json_wrapped_tool_call"
    _PATTERN = re.compile(r"```json\s*(\{.*?\"tool_call\".*?\})\s*```", re.DOTALL | re.IGNORECASE)

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        m = self._PATTERN.search(text)
        if not m:
            return None
        obj = loads_lenient(m.group(1))
        if not isinstance(obj, dict) or not isinstance(obj.get("tool_call"), dict):
            return None
        call = call_from_object(obj, m.group(1))
        return [call] if call else None


class BareToolCall:
    """``{"tool_call": {...}}`` anywhere in the text, found by brace scanning."""

    name = "bare_tool_call"
    _START = re.compile(r'\{\s*"tool_call"\s*:')

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        calls: list[ToolCall] = []
        for body in find_objects(text, self._START):
            call = call_from_object(loads_lenient(body), body)
            if call is not None:
                calls.append(call)
        return calls or None


class GenericFencedJson:
    """Any fenced JSON block shaped like a tool call."""

    name = "generic_fenced_json"
    _PATTERN = re.compile(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", re.DOTALL | re.IGNORECASE)

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        calls: list[ToolCall] = []
        for m in self._PATTERN.finditer(text):
            calls.extend(_calls_from_json_text(m.group(1), allow_flat=True))
        return calls or None


class FlatToolJson:
    """``{"tool": "name", "args": {...}}`` or ``{"tool": "name", ...rest}``."""

    name = "flat_tool_json"
    _START = re.compile(r'\{\s*"tool"\s*:\s*"')

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        bodies = find_objects(text, self._START)
        if not bodies:
            stripped = text.strip()
            if stripped.startswith("{") and stripped.endswith("}"):
                bodies = [stripped]
        calls: list[ToolCall] = []
        for body in bodies:
            call = call_from_object(loads_lenient(body), body, allow_flat=True)
            if call is not None:
                calls.append(call)
        return calls or None


class NaturalLanguageTrace:
    """Intent phrases, ``name(args)`` call syntax and quoted mentions.

    Only names in *available_tools* are ever produced.  When nothing known
    matches but the prose outside code fences plainly tries to invoke some
    other tool-like identifier (``snake_case``, no dots), a corrective
    ``error_response`` call is returned instead.

    Parameters
    ----------
    param_hints:
        Tool name -> argument name that receives a bare phrase
        (usually the tool's first required parameter).
    """

    name = "natural_language"

    _INTENT_TEMPLATES = (
        r"I(?:'ll|\s+will)\s+use\s+{t}\s+(?:to|with|for)\s+([^.!?\n]+)",
        r"Let\s+me\s+(?:use\s+)?{t}\s+(?:to|with|for)\s+([^.!?\n]+)",
        r"Using\s+{t}\s+(?:to|with|for)\s+([^.!?\n]+)",
        r"I\s+should\s+use\s+{t}\s+(?:to|with|for)\s+([^.!?\n]+)",
        r"(?:So,?\s+)?I'll\s+call\s+{t}\s+(?:to|with|for)\s+([^.!?\n]+)",
    )
    _UNKNOWN_INTENT = re.compile(
        r"(?:I(?:'ll|\s+will)|Let\s+me|I\s+should)\s+(?:use|call)\s+(?:the\s+)?"
        r"`?([A-Za-z_][\w.-]*)`?\s+(?:tool\s+)?(?:to|with|for)\b",
        re.IGNORECASE,
    )
    _UNKNOWN_CALL = re.compile(r"(?<![\w.])([A-Za-z_]\w*)\s*\(\s*\{")
    _CODE_FENCE = re.compile(r"```.*?(?:```|\Z)", re.DOTALL)

    def __init__(self, param_hints: dict[str, str] | None = None) -> None:
        self._param_hints = dict(param_hints or {})

    def try_extract(self, text: str, available_tools: Sequence[str]) -> list[ToolCall] | None:
        if not available_tools:
            return None
        found: list[tuple[int, ToolCall]] = []
        for tool in available_tools:
            hit = self._match_tool(text, tool)
            if hit is not None:
                found.append(hit)
        if found:
            found.sort(key=lambda item: item[0])
            return [call for _, call in found]
        return self._unknown_reference(text, available_tools)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _match_tool(self, text: str, tool: str) -> tuple[int, ToolCall] | None:
        t = re.escape(tool)
        for template in self._INTENT_TEMPLATES:
            m = re.search(template.format(t=t), text, re.IGNORECASE)
            if m:
                args = self._args_from_intent(tool, m.group(1).strip())
                if args:
                    return m.start(), ToolCall(name=tool, arguments=args, raw=m.group(0))

        m = re.search(rf"(?<![\w.-]){t}\s*\(([^)]*)\)", text)
        if m:
            args = self._args_from_call_syntax(tool, m.group(1).strip())
            if args:
                return m.start(), ToolCall(name=tool, arguments=args, raw=m.group(0))

        m = re.search(
            rf"(?<![\w.-]){t}\s+(?:with\s+|using\s+)?(?:query\s+)?['\"]([^'\"]+)['\"]",
            text,
            re.IGNORECASE,
        )
        if m:
            return m.start(), ToolCall(
                name=tool,
                arguments={self._primary_param(tool): m.group(1).strip()},
                raw=m.group(0),
            )
        return None

    def _primary_param(self, tool: str) -> str:
        if tool in self._param_hints:
            return self._param_hints[tool]
        lowered = tool.lower()
        if "fetch" in lowered or "url" in lowered:
            return "url"
        if "file" in lowered or "read" in lowered or "path" in lowered:
            return "path"
        return "query"

    def _args_from_intent(self, tool: str, intent: str) -> dict[str, Any]:
        intent = intent.strip().rstrip(",;:")
        param = self._primary_param(tool)
        patterns: tuple[str, ...] = ()
        if param == "query":
            patterns = (r"(?:search\s+for|find|look\s+up|get)\s+(.+)",)
        elif param == "path":
            patterns = (
                r"(?:read|open|check)\s+(?:the\s+file\s+)?['\"]?([^'\"]+)['\"]?",
                r"file\s+['\"]?([^'\"]+)['\"]?",
            )
        for pattern in patterns:
            m = re.search(pattern, intent, re.IGNORECASE)
            if m and m.group(1).strip():
                return {param: m.group(1).strip()}
        return {param: intent} if intent else {}

    def _args_from_call_syntax(self, tool: str, inner: str) -> dict[str, Any]:
        if not inner:
            return {}
        if inner.startswith("{"):
            return parse_arguments(inner)
        quoted = re.fullmatch(r"""(['"])(.*)\1""", inner, re.DOTALL)
        if quoted:
            return {self._primary_param(tool): quoted.group(2)}
        return extract_key_values(inner)

    def _unknown_reference(
        self, text: str, available_tools: Sequence[str],
    ) -> list[ToolCall] | None:
        known = set(available_tools)
        prose = self._CODE_FENCE.sub(lambda m: " " * len(m.group(0)), text)
        candidates: list[tuple[int, str]] = []
        for m in self._UNKNOWN_INTENT.finditer(prose):
            name = m.group(1)
            if "." in name:
                continue
            if re.search(r"[_-]", name) or "`" in m.group(0):
                candidates.append((m.start(), name))
        for m in self._UNKNOWN_CALL.finditer(prose):
            if "_" in m.group(1).strip("_"):
                candidates.append((m.start(), m.group(1)))
        for _, name in sorted(candidates):
            if name not in known:
                _logger.warning("Model referenced unknown tool %r", name)
                return [unknown_tool_call(name, available_tools)]
        return None


def default_recognizers(
    param_hints: dict[str, str] | None = None,
    natural_language: bool = True,
) -> list[Recognizer]:
    """Recognizers in priority order.

    Backends with native tool calling pass ``natural_language=False``:
    prose there is an answer, not a tool request.
    """
    recognizers: list[Recognizer] = [
        FencedToolBlock(),
        XmlToolCall(),
        ToDirective(),
        JsonWrappedToolCall(),
        BareToolCall(),
        GenericFencedJson(),
        FlatToolJson(),
    ]
    if natural_language:
        recognizers.append(NaturalLanguageTrace(param_hints))
    return recognizers


# ---------------------------------------------------------------------------
# Recoverer
# ---------------------------------------------------------------------------

class ToolCallRecoverer:
    """Layered, first-match-wins extraction of tool calls from text.

    ``recover`` is deterministic: the same text and tool list always give
    the same ordered calls.

    With ``natural_language=True`` (prompt-based tools) an unknown name in a
    matched block is answered with a corrective ``error_response`` call.
    Otherwise calls to unknown names are dropped and the next recognizer
    is tried.
    """

    def __init__(
        self,
        recognizers: list[Recognizer] | None = None,
        param_hints: dict[str, str] | None = None,
        natural_language: bool = True,
    ) -> None:
        self._recognizers = recognizers or default_recognizers(
            param_hints, natural_language,
        )
        self._correct_unknown = natural_language

    @property
    def recognizers(self) -> list[Recognizer]:
        return list(self._recognizers)

    @staticmethod
    def _known_only(calls: list[ToolCall], available: list[str]) -> list[ToolCall]:
        kept = [c for c in calls if c.name == ERROR_RESPONSE_TOOL or c.name in available]
        if len(kept) < len(calls):
            _logger.debug(
                "Ignoring %d text call(s) to unknown tools", len(calls) - len(kept),
            )
        return kept

    def recover(self, text: str, available_tools: Sequence[str] = ()) -> list[ToolCall]:
        if not text or not text.strip():
            return []
        _, cleaned = split_thinking(text)
        available = list(available_tools)
        for recognizer in self._recognizers:
            calls = recognizer.try_extract(cleaned, available)
            if not calls:
                continue
            _logger.debug("Recognizer %s matched %d call(s)", recognizer.name, len(calls))
            calls = dedupe(calls)
            if available and not self._correct_unknown:
                calls = self._known_only(calls, available)
                if not calls:
                    continue
            elif available:
                for call in calls:
                    if call.name != ERROR_RESPONSE_TOOL and call.name not in available:
                        _logger.warning("Model referenced unknown tool %r", call.name)
                        return [unknown_tool_call(call.name, available)]
            return calls
        return []


def strip_tool_markup(text: str, calls: list[ToolCall]) -> str:
    """Remove the raw text of recovered calls, leaving the prose around them."""
    cleaned = text
    for call in calls:
        if call.raw and call.raw in cleaned:
            cleaned = cleaned.replace(call.raw, "")
    cleaned = re.sub(r"```(?:json|tool_call|function_call|tool)?\s*```", "", cleaned)
    return re.sub(r"\n{3,}", "\n\n", cleaned).strip()
