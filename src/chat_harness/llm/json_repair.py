"""Lenient JSON helpers for model-generated tool arguments.

Tool arguments arrive truncated, fenced or half-quoted often enough that
a strict ``json.loads`` is only the first step.  :func:`parse_arguments`
never raises: it degrades to a partial or empty mapping.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

_logger = logging.getLogger(__name__)

_CLOSERS = {"{": "}", "[": "]"}


# ---------------------------------------------------------------------------
# Balanced scanning
# ---------------------------------------------------------------------------

def extract_balanced(text: str, start: int) -> str | None:
    """Extract a balanced JSON object or array starting at *start*.

    Handles nested braces and quoted strings so that
    ``{"args": {"k": "v}"}}`` is captured in full.
    """
    if start >= len(text) or text[start] not in _CLOSERS:
        return None
    stack: list[str] = []
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def find_objects(text: str, pattern: str | re.Pattern[str]) -> list[str]:
    """Balanced objects whose opening brace starts a match of *pattern*."""
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    found: list[str] = []
    end = 0
    for m in regex.finditer(text):
        if m.start() < end:
            continue
        obj = extract_balanced(text, m.start())
        if obj:
            found.append(obj)
            end = m.start() + len(obj)
    return found


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------

def strip_fences(raw: str) -> str:
    cleaned = raw.strip()
    for prefix in ("```json", "```"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def repair_json(raw: str) -> str:
    """Close an unterminated string and any unmatched braces/brackets.

    ``{"query": "abc`` becomes ``{"query": "abc"}``.
    """
    text = strip_fences(raw)
    stack: list[str] = []
    in_string = False
    escape = False
    for ch in text:
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
    if escape:
        text = text[:-1]
    if in_string:
        text += '"'
    text = re.sub(r",\s*$", "", text)
    return text + "".join(reversed(stack))


# ---------------------------------------------------------------------------
# Regex key/value fallback
# ---------------------------------------------------------------------------

_KV_PATTERNS = [
    # quoted strings
    re.compile(r"""["']?(\w+)["']?\s*[:=]\s*["']([^"']*)["']"""),
    # numbers
    re.compile(r"""["']?(\w+)["']?\s*[:=]\s*(-?\d+(?:\.\d+)?)(?=\s*[,}\]\s]|$)"""),
    # booleans
    re.compile(r"""["']?(\w+)["']?\s*[:=]\s*(true|false)\b"""),
    # arrays
    re.compile(r"""["']?(\w+)["']?\s*[:=]\s*\[([^\]]*)\]"""),
    # anything up to the next separator
    re.compile(r"""["']?(\w+)["']?\s*[:=]\s*([^,}\]\n]+)"""),
]


def _coerce(value: str, from_array: bool) -> Any:
    value = value.strip()
    if from_array:
        return [v.strip().strip("'\"") for v in value.split(",") if v.strip()]
    if value == "true":
        return True
    if value == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if "," in value:
        return [v.strip().strip("'\"") for v in value.split(",") if v.strip()]
    return value.strip("'\"")


def extract_key_values(text: str) -> dict[str, Any]:
    """Pull ``key: value`` pairs out of text that is not valid JSON."""
    args: dict[str, Any] = {}
    for idx, pattern in enumerate(_KV_PATTERNS):
        for m in pattern.finditer(text):
            key = m.group(1)
            if key in args:
                continue
            raw_value = m.group(2)
            if idx == 0:
                args[key] = raw_value
            else:
                args[key] = _coerce(raw_value, from_array=(idx == 3))
    return args


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def loads_lenient(raw: str) -> Any | None:
    """``json.loads`` then one repair pass. Returns None if both fail."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    fixed = repair_json(raw)
    try:
        value = json.loads(fixed)
    except json.JSONDecodeError:
        return None
    _logger.warning("Repaired malformed JSON: %r -> %r", raw[:120], fixed[:120])
    return value


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Turn a tool-argument payload into a dict, never raising.

    Order: already a dict, strict JSON, repaired JSON, regex key/value
    extraction, empty dict.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if not isinstance(raw, str):
        return {}
    if not raw.strip():
        return {}
    value = loads_lenient(raw)
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        # Double-encoded arguments
        inner = loads_lenient(value)
        if isinstance(inner, dict):
            return inner
    args = extract_key_values(raw)
    if args:
        _logger.warning("Recovered arguments by key/value extraction: %s", sorted(args))
    else:
        _logger.warning("Could not parse tool arguments: %r", raw[:200])
    return args
