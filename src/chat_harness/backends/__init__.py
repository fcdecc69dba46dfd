"""Backend adapters and their wire dialects."""

from chat_harness.backends.adapter import ChatBackend, ModelSession
from chat_harness.backends.custom import CUSTOM_BACKENDS, N8NBackend, ReplicateBackend
from chat_harness.backends.dialects import (
    AnthropicDialect,
    Dialect,
    GeminiDialect,
    OpenAIDialect,
    TextToolDialect,
    dialect_for,
)

__all__ = [
    "AnthropicDialect",
    "CUSTOM_BACKENDS",
    "ChatBackend",
    "Dialect",
    "GeminiDialect",
    "ModelSession",
    "N8NBackend",
    "OpenAIDialect",
    "ReplicateBackend",
    "TextToolDialect",
    "dialect_for",
]
