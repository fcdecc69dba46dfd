"""System prompts and prompt-based tool instructions."""

from __future__ import annotations

from chat_harness.types import ToolSpec

_GENERIC_PROMPT = """\
You are a helpful AI assistant. Answer clearly and accurately.
Use the available tools when they give you information or abilities you
do not have; otherwise answer directly. Wait for tool results before
giving your final answer, and work them naturally into the response."""

_LOCAL_PROMPT = """\
You are a helpful AI assistant running on a local inference server.
Use tools when you need external information or to perform actions,
formatting tool calls exactly as the tool instructions describe.
Wait for tool results before giving your final answer. Be concise."""

_WORKFLOW_PROMPT = "You are a helpful AI assistant connected to an automation workflow."

_PROMPTS: dict[str, str] = {
    "lmstudio": _LOCAL_PROMPT,
    "llamacpp": _LOCAL_PROMPT,
    "ollama": _LOCAL_PROMPT,
    "jan": _LOCAL_PROMPT,
    "n8n": _WORKFLOW_PROMPT,
    "replicate": _WORKFLOW_PROMPT,
}


def default_system_prompt(backend_id: str) -> str:
    return _PROMPTS.get(backend_id, _GENERIC_PROMPT)


_TOOL_FORMAT = """\
## Tool Usage

To call a tool, reply with a fenced JSON block and nothing else:

```json
{"tool_call": {"name": "tool_name", "arguments": {"param": "value"}}}
```

For several independent calls, put one object per line inside the same
block. Use only the exact tool names listed above. After the results come
back, answer the user normally without a JSON block."""


def tool_instructions(tools: list[ToolSpec]) -> str:
    """Describe *tools* and the calling convention for prompt-only backends."""
    if not tools:
        return ""
    descriptions = "\n\n".join(t.to_prompt_description() for t in tools)
    names = ", ".join(t.name for t in tools)
    return (
        f"## Available Tools\n{names}\n\n{descriptions}\n\n{_TOOL_FORMAT}"
    )


def augment_prompt_with_tools(base: str, tools: list[ToolSpec]) -> str:
    instructions = tool_instructions(tools)
    if not instructions:
        return base
    if not base:
        return instructions
    return f"{base.rstrip()}\n\n{instructions}"
