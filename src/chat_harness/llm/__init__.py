"""Wire-level helpers: transport, stream assembly and tool-call recovery."""

from chat_harness.llm.recovery import ERROR_RESPONSE_TOOL, ToolCallRecoverer
from chat_harness.llm.stream import StreamAssembler, ToolCallFragments
from chat_harness.llm.transport import HttpTransport

__all__ = [
    "ERROR_RESPONSE_TOOL",
    "HttpTransport",
    "StreamAssembler",
    "ToolCallFragments",
    "ToolCallRecoverer",
]
