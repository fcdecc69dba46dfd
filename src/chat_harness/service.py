"""ChatService: the caller-facing entry point.

Wires the externally owned capabilities into every adapter once, picks
the adapter by backend id, builds per-request settings from the config
and reports the turn lifecycle on the event bus.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chat_harness.cancel import CancelToken
from chat_harness.config import BackendDescriptor, HarnessConfig
from chat_harness.core.executor import BackendDependencies
from chat_harness.errors import RequestCancelledError
from chat_harness.events import EventBus, emit
from chat_harness.llm.stream import TokenCallback
from chat_harness.registry import BackendRegistry, create_registry
from chat_harness.types import ChatSettings, EventType, Message, MessageContent, UnifiedResponse

_logger = logging.getLogger(__name__)

__all__ = ["BackendDependencies", "ChatService"]


class ChatService:
    """Send turns to any configured backend.

    Usage::

        service = ChatService(config, BackendDependencies(execute_tool=run_tool,
                                                          list_tools=my_tools))
        response = await service.send("ollama", "What's the weather in Paris?",
                                      history, on_token=print)
    """

    def __init__(
        self,
        config: HarnessConfig | None = None,
        deps: BackendDependencies | None = None,
        *,
        registry: BackendRegistry | None = None,
        event_bus: EventBus | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or HarnessConfig()
        self.deps = deps or BackendDependencies()
        self.event_bus = event_bus or EventBus()
        self.registry = registry or create_registry(
            self.config, self.deps, client=client, event_bus=self.event_bus,
        )

    def descriptors(self) -> list[BackendDescriptor]:
        return [backend.descriptor for backend in self.registry]

    def settings_for(self, backend_id: str, **overrides: Any) -> ChatSettings:
        self.registry.get(backend_id)
        return self.config.settings_for(backend_id, **overrides)

    async def send(
        self,
        backend_id: str,
        message: Message | MessageContent,
        history: list[Message] | None = None,
        on_token: TokenCallback | None = None,
        cancel: CancelToken | None = None,
        *,
        settings: ChatSettings | None = None,
        conversation_id: str = "",
        **overrides: Any,
    ) -> UnifiedResponse:
        """Resolve one turn on *backend_id*.

        Parameters
        ----------
        settings:
            Explicit per-request settings.  When omitted they are built
            from the config, with *overrides* (``model=...``,
            ``temperature=...``) applied on top.
        """
        backend = self.registry.get(backend_id)
        settings = settings or self.config.settings_for(backend_id, **overrides)
        await emit(
            self.event_bus, EventType.TURN_STARTED,
            backend=backend_id, model=settings.model, conversation_id=conversation_id,
        )
        try:
            tools = await backend.fetch_tools(settings)
            response = await backend.send(
                message, settings, history, on_token, cancel,
                tools=tools, conversation_id=conversation_id,
            )
        except RequestCancelledError:
            _logger.info("Turn on %s cancelled", backend_id)
            await emit(self.event_bus, EventType.TURN_CANCELLED, backend=backend_id)
            raise
        except Exception as exc:
            await emit(
                self.event_bus, EventType.TURN_ERROR,
                backend=backend_id, error=str(exc), error_type=type(exc).__name__,
            )
            raise

        await emit(
            self.event_bus, EventType.TURN_DONE,
            backend=backend_id,
            response=response.content[:500],
            rounds=response.rounds,
            tool_calls=len(response.tool_calls),
            warnings=list(response.warnings),
        )
        return response

    async def list_models(
        self, backend_id: str, api_key: str | None = None, base_url: str | None = None,
    ) -> list[str]:
        overrides = self.config.overrides_for(backend_id)
        backend = self.registry.get(backend_id)
        return await backend.list_models(
            api_key if api_key is not None else overrides.api_key,
            base_url or overrides.base_url,
        )

    async def aclose(self) -> None:
        await self.registry.aclose()
