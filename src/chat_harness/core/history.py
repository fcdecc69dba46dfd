"""Per-turn view of the caller's conversation history."""

from __future__ import annotations

import logging

from chat_harness.types import Message

_logger = logging.getLogger(__name__)


def drop_tool_artifacts(history: list[Message]) -> list[Message]:
    """Remove assistant tool-call messages and tool results."""
    kept = [m for m in history if not m.is_tool_artifact]
    dropped = len(history) - len(kept)
    if dropped:
        _logger.debug("Dropped %d tool artifact(s) from earlier turns", dropped)
    return kept


class TurnHistory:
    """The messages one turn sends, and the exchange it appends.

    The caller's list is extended in place while the turn resolves tool
    rounds and restored to its original length when the turn ends, so
    the caller owns persistence.  Tool artifacts already present in the
    caller's history belong to earlier turns and are never re-sent.

    Usage::

        with TurnHistory(history, Message(role="user", content=text)) as turn:
            messages = turn.messages()
            ...
            turn.record(assistant_msg, result_msgs)
    """

    def __init__(self, history: list[Message] | None, current: Message) -> None:
        self._history = history if history is not None else []
        self._mark = len(self._history)
        self.prior = drop_tool_artifacts(self._history)
        self.current = current
        self.exchange: list[Message] = []

    def messages(self) -> list[Message]:
        return [*self.prior, self.current, *self.exchange]

    def record(self, assistant: Message, results: list[Message]) -> None:
        """Append one round's assistant tool-call message and its results."""
        batch = [assistant, *results]
        self.exchange.extend(batch)
        self._history.extend(batch)

    def restore(self) -> None:
        del self._history[self._mark:]

    def __enter__(self) -> TurnHistory:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.restore()
