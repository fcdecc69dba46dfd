"""Turn lifecycle events."""

from chat_harness.events.bus import EventBus, emit

__all__ = ["EventBus", "emit"]
