"""Tests for the resume loop and per-turn history handling."""

from __future__ import annotations

import asyncio

import pytest

from chat_harness.cancel import CancelToken
from chat_harness.core.executor import BackendDependencies, ToolExecutor
from chat_harness.core.history import TurnHistory, drop_tool_artifacts
from chat_harness.core.loop import ResumeLoop, result_messages
from chat_harness.errors import BackendConnectionError, RequestCancelledError
from chat_harness.events import EventBus
from chat_harness.types import ChatSettings, Completion, EventType, Message, ToolCall, Usage

SETTINGS = ChatSettings(model="test-model")


class ScriptedBackend:
    """Stands in for ChatBackend.complete; answers from a list, last one repeats."""

    def __init__(self, *completions: Completion) -> None:
        self._completions = list(completions)
        self.seen: list[list[Message]] = []

    async def complete(self, messages, settings, tools, on_token=None, cancel=None) -> Completion:
        self.seen.append(list(messages))
        template = self._completions.pop(0) if len(self._completions) > 1 else self._completions[0]
        return Completion(
            content=template.content,
            tool_calls=[ToolCall(name=c.name, arguments=dict(c.arguments), id=c.id, raw=c.raw)
                        for c in template.tool_calls],
            usage=template.usage,
        )


def _wants(*names: str, content: str = "") -> Completion:
    return Completion(
        content=content,
        tool_calls=[ToolCall(name=n, arguments={"n": i}) for i, n in enumerate(names)],
        usage=Usage(10, 2, 12),
    )


def _answer(text: str) -> Completion:
    return Completion(content=text, usage=Usage(10, 3, 13))


def _loop(backend: ScriptedBackend, deps: BackendDependencies, **kwargs) -> ResumeLoop:
    bus = kwargs.pop("event_bus", None)
    return ResumeLoop(backend.complete, ToolExecutor(deps, "test", bus), event_bus=bus, **kwargs)


@pytest.fixture
def deps() -> BackendDependencies:
    return BackendDependencies(execute_tool=lambda name, args: f"{name} ok")


class TestResumeLoop:
    async def test_plain_answer(self, deps):
        backend = ScriptedBackend(_answer("Hello"))
        with TurnHistory([], Message(role="user", content="hi")) as turn:
            response = await _loop(backend, deps).run(turn, SETTINGS, [])

        assert response.content == "Hello"
        assert response.rounds == 1
        assert response.tool_calls == []
        assert response.model == "test-model"

    async def test_usage_summed_over_completions(self, deps):
        backend = ScriptedBackend(_wants("search"), _wants("search", "read"), _answer("done"))
        with TurnHistory([], Message(role="user", content="hi")) as turn:
            response = await _loop(backend, deps).run(turn, SETTINGS, [])

        assert response.rounds == 3
        assert [c.name for c in response.tool_calls] == ["search", "search", "read"]
        assert response.usage == Usage(30, 7, 37)

    async def test_round_cap_returns_partial_answer(self, deps):
        raw = '{"tool_call": {"name": "search", "arguments": {"n": 0}}}'
        wants = Completion(
            content=f"Still looking.\n{raw}",
            tool_calls=[ToolCall(name="search", arguments={"n": 0}, raw=raw)],
        )
        backend = ScriptedBackend(wants)
        bus = EventBus()
        with TurnHistory([], Message(role="user", content="hi")) as turn:
            response = await _loop(backend, deps, max_rounds=2, event_bus=bus).run(turn, SETTINGS, [])

        assert response.rounds == 3
        assert len(response.tool_calls) == 2
        assert response.content == "Still looking."
        assert response.warnings == [
            "Stopped after 2 tool round(s); the model still requested: search",
        ]
        limits = [e for e in bus.history if e.type == EventType.LOOP_LIMIT]
        assert len(limits) == 1
        assert limits[0].data["pending"] == ["search"]

    async def test_zero_rounds_allowed(self, deps):
        backend = ScriptedBackend(_wants("search", content="I would search."))
        with TurnHistory([], Message(role="user", content="hi")) as turn:
            response = await _loop(backend, deps, max_rounds=0).run(turn, SETTINGS, [])
        assert response.tool_calls == []
        assert response.content == "I would search."
        assert len(response.warnings) == 1

    async def test_duplicate_calls_run_once(self):
        runs: list[str] = []
        deps = BackendDependencies(execute_tool=lambda name, args: runs.append(name) or "ok")
        twice = Completion(tool_calls=[
            ToolCall(name="search", arguments={"q": "a"}),
            ToolCall(name="search", arguments={"q": "a"}),
        ])
        backend = ScriptedBackend(twice, _answer("done"))
        with TurnHistory([], Message(role="user", content="hi")) as turn:
            await _loop(backend, deps).run(turn, SETTINGS, [])
        assert runs == ["search"]

    async def test_exchange_appended_between_rounds(self, deps):
        backend = ScriptedBackend(_wants("search", content="Let me check."), _answer("done"))
        with TurnHistory([Message(role="user", content="old")], Message(role="user", content="hi")) as turn:
            await _loop(backend, deps).run(turn, SETTINGS, [])

        second = backend.seen[1]
        assert [m.role for m in second] == ["user", "user", "assistant", "tool"]
        assistant, result = second[2], second[3]
        assert assistant.content == "Let me check."
        assert assistant.tool_calls[0].id
        assert result.tool_call_id == assistant.tool_calls[0].id
        assert result.content == "search ok"

    async def test_thinking_stripped_from_final_answer(self, deps):
        backend = ScriptedBackend(_answer("<think>hmm</think>Forty-two."))
        with TurnHistory([], Message(role="user", content="q")) as turn:
            response = await _loop(backend, deps).run(turn, SETTINGS, [])
        assert response.content == "Forty-two."

    async def test_backend_error_propagates_and_history_restored(self, deps):
        history = [Message(role="user", content="old")]

        async def failing(messages, settings, tools, on_token=None, cancel=None):
            if len(messages) > 2:
                raise BackendConnectionError("Test", "Cannot reach server")
            return _wants("search")

        loop = ResumeLoop(failing, ToolExecutor(deps))
        with pytest.raises(BackendConnectionError):
            with TurnHistory(history, Message(role="user", content="hi")) as turn:
                await loop.run(turn, SETTINGS, [])
        assert history == [Message(role="user", content="old")]

    async def test_events_in_order(self, deps):
        bus = EventBus()
        backend = ScriptedBackend(_wants("search"), _answer("done"))
        with TurnHistory([], Message(role="user", content="hi")) as turn:
            await _loop(backend, deps, event_bus=bus).run(turn, SETTINGS, [])

        assert [e.type for e in bus.history] == [
            EventType.LLM_REQUEST,
            EventType.LLM_RESPONSE,
            EventType.LOOP_ROUND,
            EventType.TOOL_EXECUTING,
            EventType.TOOL_EXECUTED,
            EventType.LLM_REQUEST,
            EventType.LLM_RESPONSE,
        ]


class TestCancellation:
    async def test_cancelled_before_first_request(self, deps):
        token = CancelToken()
        token.cancel()
        backend = ScriptedBackend(_answer("never"))
        with pytest.raises(RequestCancelledError):
            with TurnHistory([], Message(role="user", content="hi")) as turn:
                await _loop(backend, deps).run(turn, SETTINGS, [], cancel=token)
        assert backend.seen == []

    async def test_cancel_during_tool_stops_the_batch(self):
        token = CancelToken()
        runs: list[str] = []

        def run(name, args):
            runs.append(name)
            token.cancel("stop")
            return "ok"

        backend = ScriptedBackend(_wants("first", "second"), _answer("never"))
        history: list[Message] = []
        with pytest.raises(RequestCancelledError):
            with TurnHistory(history, Message(role="user", content="hi")) as turn:
                await _loop(backend, BackendDependencies(execute_tool=run)).run(
                    turn, SETTINGS, [], cancel=token,
                )
        assert runs == ["first"]
        assert len(backend.seen) == 1
        assert history == []

    async def test_cancel_aborts_slow_tool(self):
        token = CancelToken()

        async def slow(name, args):
            await asyncio.sleep(30)

        backend = ScriptedBackend(_wants("slow"), _answer("never"))
        loop = _loop(backend, BackendDependencies(execute_tool=slow))
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        with pytest.raises(RequestCancelledError):
            with TurnHistory([], Message(role="user", content="hi")) as turn:
                await asyncio.wait_for(loop.run(turn, SETTINGS, [], cancel=token), timeout=5)


class TestTurnHistory:
    def test_prior_excludes_tool_artifacts(self):
        history = [
            Message(role="user", content="q"),
            Message(role="assistant", tool_calls=[ToolCall(name="t", id="1")]),
            Message(role="tool", content="r", tool_call_id="1"),
            Message(role="assistant", content="a"),
        ]
        turn = TurnHistory(history, Message(role="user", content="next"))
        assert [m.role for m in turn.prior] == ["user", "assistant"]
        assert turn.messages()[-1].content == "next"

    def test_record_and_restore(self):
        history = [Message(role="user", content="q")]
        turn = TurnHistory(history, Message(role="user", content="next"))
        assistant = Message(role="assistant", tool_calls=[ToolCall(name="t", id="1")])
        results = [Message(role="tool", content="r", tool_call_id="1")]

        turn.record(assistant, results)
        assert len(history) == 3
        assert turn.messages()[-2:] == [assistant, *results]

        turn.restore()
        assert len(history) == 1

    def test_context_manager_restores_on_error(self):
        history: list[Message] = []
        with pytest.raises(RuntimeError):
            with TurnHistory(history, Message(role="user", content="x")) as turn:
                turn.record(Message(role="assistant", tool_calls=[ToolCall(name="t")]), [])
                raise RuntimeError("boom")
        assert history == []

    def test_none_history(self):
        turn = TurnHistory(None, Message(role="user", content="x"))
        turn.record(Message(role="assistant", content=""), [])
        assert len(turn.messages()) == 2

    def test_drop_tool_artifacts_keeps_plain_assistant(self):
        kept = drop_tool_artifacts([Message(role="assistant", content="hi")])
        assert len(kept) == 1

    def test_result_messages(self):
        call = ToolCall(name="t", id="c1", result="Error (timeout): slow", error=True)
        msg = result_messages([call])[0]
        assert (msg.role, msg.tool_call_id, msg.name, msg.is_error) == ("tool", "c1", "t", True)
