"""Small text helpers shared by the adapters.

Token estimation, response cleanup, ``<think>`` splitting, and the
tool-name rewrites some backends need (length limits, Gemini's charset).
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from typing import Any

from chat_harness.types import Usage

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Thinking extraction
# ---------------------------------------------------------------------------

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)


def split_thinking(text: str) -> tuple[str, str]:
    """Extract ``<think>...</think>`` blocks from response text.

    Returns (thinking_text, cleaned_text).  An unterminated ``<think>``
    swallows the rest of the text.
    """
    thinking_parts = _THINK_RE.findall(text)
    cleaned = _THINK_RE.sub("", text)
    dangling = cleaned.find("<think>")
    if dangling >= 0:
        thinking_parts.append(cleaned[dangling + len("<think>"):])
        cleaned = cleaned[:dangling]
    thinking = "\n".join(p.strip() for p in thinking_parts).strip()
    return thinking, cleaned.strip()


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Rough token count: 0.75 per word plus 0.25 per 4 characters."""
    if not text:
        return 0
    words = len(text.split())
    return math.ceil(words * 0.75 + len(text) * 0.25 / 4)


def estimate_usage(prompt_text: str, response_text: str) -> Usage:
    prompt = estimate_tokens(prompt_text)
    completion = estimate_tokens(response_text)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
        estimated=True,
    )


# ---------------------------------------------------------------------------
# Response cleanup (webhook-style backends)
# ---------------------------------------------------------------------------

_CONTENT_FIELDS = ("output", "response", "message", "content", "text", "result")
_TAG_RE = re.compile(r"<[^>]+>")


def _strip_tags(text: str) -> str:
    return _TAG_RE.sub("", text).strip()


def _pick_content(obj: dict[str, Any]) -> str | None:
    for key in _CONTENT_FIELDS:
        value = obj.get(key)
        if value:
            return value if isinstance(value, str) else json.dumps(value)
    return None


def clean_response(text: str) -> str:
    """Unwrap JSON envelopes and XML-like tags around a plain answer.

    ``[{"output": "<Simple>hi</Simple>"}]`` becomes ``hi``.
    """
    if not text or not text.strip():
        return ""
    trimmed = text.strip()
    looks_json = (trimmed[0], trimmed[-1]) in (("{", "}"), ("[", "]"))
    if looks_json:
        try:
            data = json.loads(trimmed)
        except json.JSONDecodeError:
            return _strip_tags(trimmed)
        if isinstance(data, list):
            parts: list[str] = []
            for item in data:
                if isinstance(item, str):
                    parts.append(item)
                elif isinstance(item, dict):
                    parts.append(_pick_content(item) or json.dumps(item))
            return _strip_tags("\n\n".join(parts))
        if isinstance(data, dict):
            picked = _pick_content(data)
            return _strip_tags(picked) if picked else json.dumps(data)
        return _strip_tags(str(data))
    if "<" in trimmed and ">" in trimmed:
        return _strip_tags(trimmed)
    return trimmed


# ---------------------------------------------------------------------------
# Tool-name rewriting
# ---------------------------------------------------------------------------

_ABBREVIATIONS = {
    "SEARCH": "SRCH",
    "BROWSER": "BRWS",
    "MEMORY": "MEM",
    "DATETIME": "DT",
    "ANALYSIS": "ANLYS",
    "FUNCTION": "FN",
    "REQUEST": "REQ",
    "RESPONSE": "RESP",
    "DATABASE": "DB",
    "DOCUMENT": "DOC",
}


def shorten_tool_name(name: str, limit: int) -> str:
    """Fit *name* into *limit* characters.

    Abbreviates common words first; if still too long, cuts and appends a
    short hash of the full name so distinct long names stay distinct.
    """
    if len(name) <= limit:
        return name
    short = name
    for full, abbrev in _ABBREVIATIONS.items():
        short = re.sub(full, abbrev, short, flags=re.IGNORECASE)
    if len(short) <= limit:
        return short
    digest = hashlib.sha1(name.encode()).hexdigest()[:8]
    return f"{short[: limit - 9]}_{digest}"


def sanitize_gemini_name(name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9_.-]", "_", name)
    if not re.match(r"[a-zA-Z_]", sanitized):
        sanitized = "_" + sanitized
    return sanitized[:64] or "tool"


class ToolNameMap:
    """Bidirectional map between original and wire tool names.

    The executor must always see the original name, so every rewritten
    name is remembered and reversed when calls come back.
    """

    def __init__(self) -> None:
        self._to_wire: dict[str, str] = {}
        self._to_original: dict[str, str] = {}

    def add(self, original: str, wire: str) -> str:
        if wire in self._to_original and self._to_original[wire] != original:
            digest = hashlib.sha1(original.encode()).hexdigest()[:6]
            wire = f"{wire[: max(1, len(wire) - 7)]}_{digest}"
        if wire != original:
            _logger.debug("Tool name %r sent as %r", original, wire)
        self._to_wire[original] = wire
        self._to_original[wire] = original
        return wire

    def wire(self, original: str) -> str:
        return self._to_wire.get(original, original)

    def original(self, wire: str) -> str:
        return self._to_original.get(wire, wire)

    def __len__(self) -> int:
        return len(self._to_wire)


# ---------------------------------------------------------------------------
# Gemini schema cleanup
# ---------------------------------------------------------------------------

_GEMINI_SCHEMA_KEYS = {
    "type", "description", "properties", "required", "items", "enum",
    "minimum", "maximum", "nullable",
}


def clean_schema_for_gemini(schema: Any) -> dict[str, Any]:
    """Keep only the JSON-schema keywords Gemini accepts, recursively."""
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _GEMINI_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned["properties"] = {
                pname: clean_schema_for_gemini(pval) for pname, pval in value.items()
            }
        elif key == "items":
            cleaned["items"] = clean_schema_for_gemini(value)
        elif key == "type" and isinstance(value, list):
            # ["string", "null"] style unions
            non_null = [t for t in value if t != "null"]
            cleaned["type"] = non_null[0] if non_null else "string"
            if len(non_null) != len(value):
                cleaned["nullable"] = True
        else:
            cleaned[key] = value
    if "type" not in cleaned:
        cleaned["type"] = "object" if "properties" in cleaned else "string"
    if cleaned.get("required") and "properties" in cleaned:
        cleaned["required"] = [r for r in cleaned["required"] if r in cleaned["properties"]]
    return cleaned
