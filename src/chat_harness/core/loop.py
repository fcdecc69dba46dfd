"""ResumeLoop: complete, execute requested tools, resume, repeat.

    complete -> (calls?) -> execute -> record exchange -> complete ...

The loop stops when a completion requests no tools, when the cancel
token fires, when a backend call raises, or when ``max_rounds`` tool
rounds have run.  Hitting the round cap is not an error: the last
completion's text is returned with a warning attached.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from chat_harness import cancel as cancellation
from chat_harness.cancel import CancelToken
from chat_harness.core.executor import ToolExecutor
from chat_harness.core.history import TurnHistory
from chat_harness.events import EventBus, emit
from chat_harness.llm.recovery import dedupe, strip_tool_markup
from chat_harness.llm.stream import TokenCallback
from chat_harness.llm.text_utils import split_thinking
from chat_harness.types import (
    ChatSettings,
    Completion,
    EventType,
    Message,
    ToolCall,
    ToolSpec,
    UnifiedResponse,
    Usage,
    sum_usage,
)

_logger = logging.getLogger(__name__)

CompleteFn = Callable[
    [list[Message], ChatSettings, list[ToolSpec], "TokenCallback | None", "CancelToken | None"],
    Awaitable[Completion],
]


def result_messages(calls: list[ToolCall]) -> list[Message]:
    """One ``role="tool"`` message per executed call."""
    return [
        Message(
            role="tool",
            content=call.result or "",
            tool_call_id=call.id,
            name=call.name,
            is_error=call.error,
        )
        for call in calls
    ]


class ResumeLoop:
    """Drive one turn through as many tool rounds as the model asks for.

    Parameters
    ----------
    complete:
        One backend round trip (``ChatBackend.complete``).
    executor:
        Runs the calls of each round.
    max_rounds:
        Maximum number of tool-execution rounds per turn.
    event_bus:
        Optional bus for ``llm.*``, ``loop.*`` events.
    backend_id:
        Included in emitted events.
    """

    def __init__(
        self,
        complete: CompleteFn,
        executor: ToolExecutor,
        max_rounds: int = 8,
        event_bus: EventBus | None = None,
        backend_id: str = "",
    ) -> None:
        self._complete = complete
        self._executor = executor
        self._max_rounds = max_rounds
        self._event_bus = event_bus
        self._backend_id = backend_id

    async def run(
        self,
        turn: TurnHistory,
        settings: ChatSettings,
        tools: list[ToolSpec],
        on_token: TokenCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> UnifiedResponse:
        usages: list[Usage | None] = []
        resolved: list[ToolCall] = []
        warnings: list[str] = []
        tool_rounds = 0
        completions = 0

        while True:
            cancellation.check(cancel)
            completions += 1
            messages = turn.messages()
            await emit(
                self._event_bus, EventType.LLM_REQUEST,
                backend=self._backend_id, model=settings.model,
                round=completions, messages=len(messages),
            )
            completion = await self._complete(messages, settings, tools, on_token, cancel)
            usages.append(completion.usage)
            calls = dedupe(completion.tool_calls)
            await emit(
                self._event_bus, EventType.LLM_RESPONSE,
                backend=self._backend_id,
                round=completions,
                content_length=len(completion.content),
                tool_calls=[c.name for c in calls],
            )

            if not calls:
                break

            if tool_rounds >= self._max_rounds:
                message = (
                    f"Stopped after {tool_rounds} tool round(s); the model still "
                    f"requested: {', '.join(c.name for c in calls)}"
                )
                _logger.warning(message)
                warnings.append(message)
                await emit(
                    self._event_bus, EventType.LOOP_LIMIT,
                    backend=self._backend_id, rounds=tool_rounds,
                    pending=[c.name for c in calls],
                )
                completion.content = strip_tool_markup(completion.content, calls)
                break

            tool_rounds += 1
            _logger.info(
                "Tool round %d: %s", tool_rounds, ", ".join(c.name for c in calls),
            )
            await emit(
                self._event_bus, EventType.LOOP_ROUND,
                backend=self._backend_id, round=tool_rounds,
                tools=[c.name for c in calls],
            )
            for call in calls:
                call.ensure_id()
            executed = await self._executor.execute(calls, cancel)
            # Cancelled mid-batch: do not resume
            cancellation.check(cancel)
            resolved.extend(executed)
            turn.record(
                Message(role="assistant", content=completion.content, tool_calls=executed),
                result_messages(executed),
            )

        _, content = split_thinking(completion.content)
        return UnifiedResponse(
            content=content,
            usage=sum_usage(usages),
            tool_calls=resolved,
            model=settings.model,
            rounds=completions,
            warnings=warnings,
        )
