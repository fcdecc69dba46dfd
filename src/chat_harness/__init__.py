"""Chat Harness: one send/stream/tool-call contract over many chat backends."""

__version__ = "0.3.0"

from chat_harness.backends import ChatBackend
from chat_harness.cancel import CancelToken
from chat_harness.config import HarnessConfig, load_config
from chat_harness.core import BackendDependencies
from chat_harness.registry import BackendRegistry, create_registry
from chat_harness.service import ChatService
from chat_harness.types import (
    ChatSettings,
    ContentItem,
    Message,
    ToolCall,
    ToolSpec,
    UnifiedResponse,
    Usage,
)

__all__ = [
    "BackendDependencies",
    "BackendRegistry",
    "CancelToken",
    "ChatBackend",
    "ChatService",
    "ChatSettings",
    "ContentItem",
    "HarnessConfig",
    "Message",
    "ToolCall",
    "ToolSpec",
    "UnifiedResponse",
    "Usage",
    "create_registry",
    "load_config",
]
