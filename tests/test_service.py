"""Tests for the backend registry and ChatService."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from chat_harness.backends.adapter import ChatBackend
from chat_harness.backends.custom import N8NBackend, ReplicateBackend
from chat_harness.cancel import CancelToken
from chat_harness.config import DEFAULT_BACKENDS, BackendDescriptor, BackendOverrides, HarnessConfig
from chat_harness.core.executor import BackendDependencies
from chat_harness.errors import AuthenticationError, RequestCancelledError, UnknownBackendError
from chat_harness.events import EventBus
from chat_harness.registry import BackendRegistry, create_registry
from chat_harness.service import ChatService
from chat_harness.types import EventType, Message

from conftest import openai_message

CHAT = "/v1/chat/completions"


def _entry_point(name: str, loaded=None, error: Exception | None = None) -> MagicMock:
    ep = MagicMock()
    ep.name = name
    if error is not None:
        ep.load.side_effect = error
    else:
        ep.load.return_value = loaded
    return ep


class TestRegistry:
    async def test_every_known_backend_registered(self, client):
        registry = create_registry(client=client)
        assert registry.ids() == list(DEFAULT_BACKENDS)
        assert len(registry) == 14

    async def test_custom_backend_classes(self, client):
        registry = create_registry(client=client)
        assert isinstance(registry.get("n8n"), N8NBackend)
        assert isinstance(registry.get("replicate"), ReplicateBackend)
        assert registry.get("replicate").dialect is None
        assert type(registry.get("openai")) is ChatBackend

    async def test_capabilities(self, client):
        registry = create_registry(client=client)
        assert registry.capabilities("lmstudio").tool_format == "text"
        assert registry.capabilities("anthropic").tool_format == "anthropic"
        assert registry.capabilities("deepseek").supports_tools is False

    async def test_unknown_backend(self, client):
        registry = create_registry(client=client)
        with pytest.raises(UnknownBackendError) as info:
            registry.get("nope")
        assert isinstance(info.value, KeyError)
        assert str(info.value) == "Unknown backend: 'nope'"
        assert not registry.has("nope")

    async def test_config_applied(self, client):
        config = HarnessConfig(
            backends={"lmstudio": BackendOverrides(base_url="http://gpu.test:1234/v1")},
            max_tool_rounds=3,
            model_load_attempts=5,
        )
        backend = create_registry(config, client=client).get("lmstudio")
        assert backend.descriptor.base_url == "http://gpu.test:1234/v1"
        assert backend.max_tool_rounds == 3
        assert backend.session is not None

    async def test_shared_dependencies(self, client):
        deps = BackendDependencies(execute_tool=Mock())
        registry = create_registry(deps=deps, client=client)
        assert all(backend.deps is deps for backend in registry)

    async def test_register_replaces(self, client):
        registry = BackendRegistry()
        first = ChatBackend(DEFAULT_BACKENDS["ollama"], client=client)
        second = ChatBackend(DEFAULT_BACKENDS["ollama"], client=client)
        registry.register(first)
        registry.register(second)
        assert registry.get("ollama") is second
        assert len(registry) == 1


class TestDiscovery:
    async def test_factory_and_instance_plugins(self, client):
        deps = BackendDependencies()
        descriptor = BackendDescriptor("acme", "Acme LLM", "http://acme.test/v1", False)
        instance = ChatBackend(
            BackendDescriptor("static", "Static", "http://static.test/v1", False), client=client,
        )
        factory = Mock(side_effect=lambda d: ChatBackend(descriptor, d, client=client))
        points = [_entry_point("acme", factory), _entry_point("static", instance)]

        registry = BackendRegistry()
        with patch("chat_harness.registry.entry_points", return_value=points) as eps:
            registry.discover(deps)

        eps.assert_called_once_with(group="chat_harness.backends")
        factory.assert_called_once_with(deps)
        assert registry.ids() == ["acme", "static"]

    async def test_broken_plugins_are_skipped(self, client, caplog):
        points = [
            _entry_point("broken", error=ImportError("no module")),
            _entry_point("wrong", Mock(return_value=object())),
        ]
        registry = BackendRegistry()
        with caplog.at_level(logging.WARNING):
            with patch("chat_harness.registry.entry_points", return_value=points):
                registry.discover()

        assert len(registry) == 0
        assert "Failed to load backend plugin: broken" in caplog.text
        assert "did not return a ChatBackend" in caplog.text

    async def test_create_registry_discovers_on_request(self, client):
        plugin = ChatBackend(
            BackendDescriptor("extra", "Extra", "http://x.test/v1", False), client=client,
        )
        with patch("chat_harness.registry.entry_points", return_value=[_entry_point("extra", plugin)]):
            registry = create_registry(client=client, discover=True)
        assert registry.has("extra")
        assert len(registry) == 15


@pytest.fixture
def config() -> HarnessConfig:
    return HarnessConfig(backends={"openai": BackendOverrides(api_key="sk-test", model="gpt-4o-mini")})


class TestChatService:
    async def test_turn_events(self, server, client, config, web_search):
        server.add_json("POST", CHAT, openai_message(tool_calls=[{
            "id": "1", "type": "function",
            "function": {"name": "web_search", "arguments": '{"query": "q"}'},
        }]))
        server.add_json("POST", CHAT, openai_message("Answer."))
        bus = EventBus()
        list_tools = Mock(return_value=[web_search])
        deps = BackendDependencies(execute_tool=Mock(return_value="found"), list_tools=list_tools)
        service = ChatService(config, deps, event_bus=bus, client=client)

        response = await service.send("openai", "question", [])

        assert response.content == "Answer."
        list_tools.assert_called_once()
        assert [e.type for e in bus.history] == [
            EventType.TURN_STARTED,
            EventType.LLM_REQUEST,
            EventType.LLM_RESPONSE,
            EventType.LOOP_ROUND,
            EventType.TOOL_EXECUTING,
            EventType.TOOL_EXECUTED,
            EventType.LLM_REQUEST,
            EventType.LLM_RESPONSE,
            EventType.TURN_DONE,
        ]
        started, done = bus.history[0], bus.history[-1]
        assert started.data["model"] == "gpt-4o-mini"
        assert done.data["rounds"] == 2
        assert done.data["tool_calls"] == 1

    async def test_settings_from_config_and_overrides(self, server, client, config):
        server.add_json("POST", CHAT, openai_message("ok"))
        service = ChatService(config, client=client)

        await service.send("openai", "hi", temperature=0.1, model="gpt-4o")

        body = server.bodies()[0]
        assert body["model"] == "gpt-4o"
        assert body["temperature"] == 0.1
        assert server.requests[0].headers["Authorization"] == "Bearer sk-test"

    def test_settings_for(self, config):
        settings = ChatService(config).settings_for("openai", max_tokens=100)
        assert settings.model == "gpt-4o-mini"
        assert settings.max_tokens == 100
        assert settings.api_key == "sk-test"
        assert settings.base_url == "https://api.openai.com/v1"

    async def test_unknown_backend(self, client):
        bus = EventBus()
        service = ChatService(event_bus=bus, client=client)
        with pytest.raises(UnknownBackendError):
            await service.send("nope", "hi")
        assert bus.history == []

    async def test_backend_error_reported(self, server, client, config):
        server.add_text("POST", CHAT, "invalid key", status=401)
        bus = EventBus()
        service = ChatService(config, event_bus=bus, client=client)

        with pytest.raises(AuthenticationError):
            await service.send("openai", "hi")

        last = bus.history[-1]
        assert last.type == EventType.TURN_ERROR
        assert last.data["error_type"] == "AuthenticationError"

    async def test_cancellation_reported(self, client, config):
        bus = EventBus()
        service = ChatService(config, event_bus=bus, client=client)
        token = CancelToken()
        token.cancel()

        with pytest.raises(RequestCancelledError):
            await service.send("openai", "hi", cancel=token)

        assert bus.history[-1].type == EventType.TURN_CANCELLED

    async def test_memory_written_in_background(self, server, client, config):
        server.add_json("POST", CHAT, openai_message("Paris."))
        create_memory = AsyncMock()
        service = ChatService(config, BackendDependencies(create_memory=create_memory), client=client)
        history = [Message(role="user", content="hello"), Message(role="assistant", content="hi")]

        await service.send("openai", "capital of France?", history, conversation_id="conv-1")
        for _ in range(5):
            await asyncio.sleep(0)

        create_memory.assert_awaited_once_with("capital of France?", "Paris.", history, "conv-1")

    async def test_memory_failure_logged_not_raised(self, server, client, config, caplog):
        server.add_json("POST", CHAT, openai_message("ok"))
        create_memory = AsyncMock(side_effect=RuntimeError("disk full"))
        service = ChatService(config, BackendDependencies(create_memory=create_memory), client=client)

        with caplog.at_level(logging.ERROR):
            response = await service.send("openai", "hi")
            for _ in range(5):
                await asyncio.sleep(0)

        assert response.content == "ok"
        assert "Memory writer failed for openai" in caplog.text

    async def test_list_models_uses_configured_key(self, server, client, config):
        server.add_json("GET", "/v1/models", {"data": [{"id": "gpt-4o"}]})
        service = ChatService(config, client=client)

        assert await service.list_models("openai") == ["gpt-4o"]
        assert server.requests[0].headers["Authorization"] == "Bearer sk-test"

    def test_descriptors(self):
        ids = [d.id for d in ChatService().descriptors()]
        assert ids == list(DEFAULT_BACKENDS)
