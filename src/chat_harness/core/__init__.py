"""Tool execution and the resume loop."""

from chat_harness.core.executor import BackendDependencies, ToolExecutor
from chat_harness.core.history import TurnHistory
from chat_harness.core.loop import ResumeLoop

__all__ = [
    "BackendDependencies",
    "ResumeLoop",
    "ToolExecutor",
    "TurnHistory",
]
