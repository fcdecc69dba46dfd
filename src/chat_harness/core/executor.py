"""ToolExecutor: runs requested tool calls through the injected executor.

Calls run sequentially in discovery order.  A failing tool never aborts
the batch: its exception is classified and rendered as the call's result
so the model can see it and adapt on the next round.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from chat_harness import cancel as cancellation
from chat_harness.cancel import CancelToken
from chat_harness.errors import (
    RequestCancelledError,
    ToolErrorKind,
    classify_tool_error,
    format_tool_error,
)
from chat_harness.events import EventBus, emit
from chat_harness.llm.recovery import ERROR_RESPONSE_TOOL, dedupe
from chat_harness.types import EventType, ToolCall

_logger = logging.getLogger(__name__)


@dataclass
class BackendDependencies:
    """Externally owned capabilities handed to an adapter at construction.

    Every callable may be sync or async.

    Parameters
    ----------
    execute_tool:
        ``(name, arguments) -> result``; the result is rendered as text.
    list_tools:
        ``(backend_id, settings) -> [tool]``; tools in any shape
        :meth:`ToolSpec.from_any` accepts.
    execute_parallel:
        ``(calls, backend_id) -> [result]``; when set, batches of more than
        one call are handed over whole.
    summarize_results:
        ``(calls) -> str`` shown alongside the final answer.
    create_memory:
        ``(user_text, assistant_text, history, conversation_id)``; run in
        the background after a completed turn.
    """

    execute_tool: Callable[..., Any] | None = None
    list_tools: Callable[..., Any] | None = None
    execute_parallel: Callable[..., Any] | None = None
    summarize_results: Callable[..., Any] | None = None
    create_memory: Callable[..., Any] | None = None


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call *fn* and await the result when it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def render_result(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class ToolExecutor:
    """Runs ToolCalls and attaches their results in place.

    Usage::

        executor = ToolExecutor(deps, backend_id="ollama", event_bus=bus)
        calls = await executor.execute(calls, cancel=token)
    """

    def __init__(
        self,
        deps: BackendDependencies,
        backend_id: str = "",
        event_bus: EventBus | None = None,
    ) -> None:
        self._deps = deps
        self._backend_id = backend_id
        self._event_bus = event_bus

    async def execute(
        self,
        calls: list[ToolCall],
        cancel: CancelToken | None = None,
    ) -> list[ToolCall]:
        """Execute *calls* (de-duplicated) and return them with results."""
        calls = dedupe(calls)
        runnable = [c for c in calls if c.name != ERROR_RESPONSE_TOOL]
        for call in calls:
            if call.name == ERROR_RESPONSE_TOOL:
                await self._reject(call)

        if self._deps.execute_parallel is not None and len(runnable) > 1:
            await self._execute_parallel(runnable, cancel)
        else:
            for call in runnable:
                cancellation.check(cancel)
                await self._execute_one(call, cancel)
        return calls

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute_one(self, call: ToolCall, cancel: CancelToken | None) -> None:
        await emit(
            self._event_bus, EventType.TOOL_EXECUTING,
            tool=call.name, arguments=call.arguments, call_id=call.id,
        )
        if self._deps.execute_tool is None:
            self._fail(call, "No tool executor is configured", ToolErrorKind.UNKNOWN)
            await self._emit_done(call)
            return

        _logger.info("Executing tool %s", call.name)
        start = time.monotonic()
        try:
            value = await cancellation.race(
                cancel, call_maybe_async(self._deps.execute_tool, call.name, call.arguments),
            )
        except RequestCancelledError:
            raise
        except Exception as exc:
            kind = classify_tool_error(exc)
            _logger.warning("Tool %s failed (%s): %s", call.name, kind.value, exc)
            self._fail(call, exc, kind)
        else:
            call.result = render_result(value)
            call.error = False
        call.execution_time_ms = (time.monotonic() - start) * 1000
        await self._emit_done(call)

    async def _execute_parallel(self, calls: list[ToolCall], cancel: CancelToken | None) -> None:
        cancellation.check(cancel)
        for call in calls:
            await emit(
                self._event_bus, EventType.TOOL_EXECUTING,
                tool=call.name, arguments=call.arguments, call_id=call.id,
            )
        _logger.info("Executing %d tools through the parallel executor", len(calls))
        start = time.monotonic()
        try:
            results = await cancellation.race(
                cancel,
                call_maybe_async(self._deps.execute_parallel, calls, self._backend_id),
            )
        except RequestCancelledError:
            raise
        except Exception as exc:
            kind = classify_tool_error(exc)
            _logger.warning("Parallel tool execution failed (%s): %s", kind.value, exc)
            for call in calls:
                self._fail(call, exc, kind)
                await self._emit_done(call)
            return

        elapsed = (time.monotonic() - start) * 1000
        results = list(results or [])
        for i, call in enumerate(calls):
            if i < len(results):
                self._attach(call, results[i])
            else:
                self._fail(call, "Parallel executor returned no result", ToolErrorKind.UNKNOWN)
            if call.execution_time_ms is None:
                call.execution_time_ms = elapsed
            await self._emit_done(call)

    @staticmethod
    def _attach(call: ToolCall, item: Any) -> None:
        """Copy one parallel-executor result onto *call*."""
        if isinstance(item, ToolCall):
            call.result = item.result if item.result is not None else ""
            call.error = item.error
            call.error_kind = item.error_kind
            call.execution_time_ms = item.execution_time_ms
            return
        if isinstance(item, BaseException):
            kind = classify_tool_error(item)
            ToolExecutor._fail(call, item, kind)
            return
        if isinstance(item, dict):
            error = item.get("error")
            if error and error is not True:
                ToolExecutor._fail(call, str(error), classify_tool_error(str(error)))
                return
            for key in ("result", "content", "output"):
                if key in item:
                    call.result = render_result(item[key])
                    call.error = bool(error)
                    return
            call.error = bool(error)
        call.result = render_result(item)

    @staticmethod
    def _fail(call: ToolCall, exc: BaseException | str, kind: ToolErrorKind) -> None:
        call.result = format_tool_error(exc, kind)
        call.error = True
        call.error_kind = kind.value

    async def _reject(self, call: ToolCall) -> None:
        """Answer a synthetic ``error_response`` call without executing it."""
        call.ensure_id()
        call.result = str(call.arguments.get("error") or "Invalid tool call")
        call.error = True
        call.error_kind = ToolErrorKind.NOT_FOUND.value
        call.execution_time_ms = 0.0
        await emit(
            self._event_bus, EventType.TOOL_ERROR,
            tool=call.arguments.get("invalid_tool", ""), error=call.result, call_id=call.id,
        )

    async def _emit_done(self, call: ToolCall) -> None:
        if call.error:
            await emit(
                self._event_bus, EventType.TOOL_ERROR,
                tool=call.name, error=call.result, kind=call.error_kind, call_id=call.id,
            )
        else:
            await emit(
                self._event_bus, EventType.TOOL_EXECUTED,
                tool=call.name,
                output_length=len(call.result or ""),
                execution_time_ms=call.execution_time_ms,
                call_id=call.id,
            )
