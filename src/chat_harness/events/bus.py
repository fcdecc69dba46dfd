"""Turn lifecycle events.

The resume loop, the tool executor and :class:`ChatService` publish
:class:`HarnessEvent` records here.  Subscribers observe; they cannot
change the outcome of a turn.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from chat_harness.types import EventType, HarnessEvent

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

Handler = Callable[[HarnessEvent], Any]


def _topic(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventBus:
    """Fan-out of harness events to sync or async subscribers.

    Parameters
    ----------
    max_history:
        How many of the most recent events :attr:`history` keeps.

    A subscriber that raises is logged with its traceback; the publisher
    and the other subscribers carry on.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._recent: deque[HarnessEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """Call *handler* for *event_type*, or for everything with ``"*"``.

        Returns a callable that removes the subscription again.
        """
        self._handlers.setdefault(_topic(event_type), []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        topic = _topic(event_type)
        handlers = self._handlers.get(topic)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[topic]

    def _subscribers(self, event: HarnessEvent) -> list[Handler]:
        return [
            *self._handlers.get(_topic(event.type), ()),
            *self._handlers.get(ALL_EVENTS, ()),
        ]

    async def emit(self, event: HarnessEvent) -> None:
        self._recent.append(event)
        subscribers = self._subscribers(event)
        if subscribers:
            await asyncio.gather(*(_dispatch(h, event) for h in subscribers))

    async def publish(self, event_type: EventType, **data: Any) -> HarnessEvent:
        """Build a :class:`HarnessEvent` from keyword data and emit it."""
        event = HarnessEvent(type=event_type, data=data)
        await self.emit(event)
        return event

    @property
    def history(self) -> list[HarnessEvent]:
        """Oldest-first snapshot of the retained events."""
        return list(self._recent)

    def clear(self) -> None:
        self._handlers.clear()
        self._recent.clear()


async def _dispatch(handler: Handler, event: HarnessEvent) -> None:
    try:
        outcome = handler(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        name = getattr(handler, "__qualname__", None) or repr(handler)
        _logger.exception("Event handler %s failed on %s", name, event.type.value)


async def emit(bus: EventBus | None, event_type: EventType, **data: Any) -> None:
    """Publish on *bus* when one is attached; no-op otherwise."""
    if bus is not None:
        await bus.publish(event_type, **data)
