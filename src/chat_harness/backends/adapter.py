"""ChatBackend: the uniform send/stream/tool-call contract for one backend.

One class serves every HTTP backend.  The descriptor's capability profile
picks the wire :mod:`dialect <chat_harness.backends.dialects>`, whether
tools are offered natively or through the system prompt, and whether the
text recoverer runs over the answer.  Tool rounds are driven by
:class:`~chat_harness.core.loop.ResumeLoop`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

import httpx

from chat_harness import cancel as cancellation
from chat_harness.backends.dialects import Dialect, dialect_for
from chat_harness.backends.prompts import augment_prompt_with_tools, default_system_prompt
from chat_harness.cancel import CancelToken
from chat_harness.config import FALLBACK_MODELS, BackendDescriptor
from chat_harness.core.executor import BackendDependencies, ToolExecutor, call_maybe_async
from chat_harness.core.history import TurnHistory
from chat_harness.core.loop import ResumeLoop
from chat_harness.errors import BackendError, ModelLoadingError
from chat_harness.events import EventBus
from chat_harness.llm.recovery import ToolCallRecoverer
from chat_harness.llm.stream import TokenCallback, deliver
from chat_harness.llm.text_utils import ToolNameMap, estimate_usage
from chat_harness.llm.transport import HttpTransport, is_loading_response
from chat_harness.types import (
    ChatSettings,
    Completion,
    ContentItem,
    Message,
    MessageContent,
    ToolCall,
    ToolSpec,
    UnifiedResponse,
    ValidationResult,
)

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Local model session
# ---------------------------------------------------------------------------

class ModelSession:
    """Which model a local server has loaded, for one adapter instance.

    Local servers (llama.cpp, LM Studio) answer 503 "Loading model" while
    a model loads.  ``ensure_loaded`` polls ``{base}/models`` until the
    server is ready; the lock serializes model switches between
    concurrent turns on the same adapter.
    """

    def __init__(
        self,
        transport: HttpTransport,
        attempts: int = 30,
        interval: float = 1.0,
    ) -> None:
        self._transport = transport
        self._attempts = attempts
        self._interval = interval
        self._lock = asyncio.Lock()
        self.loaded_model = ""

    def reset(self) -> None:
        self.loaded_model = ""

    async def ensure_loaded(
        self,
        model: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        async with self._lock:
            if model and model == self.loaded_model:
                return
            url = f"{base_url.rstrip('/')}/models"
            for attempt in range(self._attempts):
                cancellation.check(cancel)
                status, body = await self._transport.get_status(url, headers, cancel=cancel)
                if status < 400:
                    self.loaded_model = model
                    return
                if status == 503 or is_loading_response(status, body):
                    _logger.info(
                        "%s is loading %s (attempt %d/%d)",
                        self._transport.backend, model or "the model",
                        attempt + 1, self._attempts,
                    )
                    await cancellation.sleep(cancel, self._interval)
                    continue
                # Readiness probe unsupported; the chat call reports real errors
                _logger.debug(
                    "%s readiness probe answered HTTP %d", self._transport.backend, status,
                )
                return
            raise ModelLoadingError(
                self._transport.backend, "Model loading timed out",
                "the model is still loading; retry in a moment",
            )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class ChatBackend:
    """Adapter for one backend id.

    Parameters
    ----------
    descriptor:
        Static identity and capability profile.
    deps:
        Externally owned capabilities (tool executor, tool lister, ...).
    dialect:
        Wire grammar; defaults to the one matching the profile's
        ``tool_format``.
    transport / client:
        HTTP transport, or an ``httpx.AsyncClient`` to build one around.
    max_tool_rounds:
        Cap on tool-execution rounds per turn.
    event_bus:
        Optional bus receiving ``llm.*``, ``tool.*`` and ``loop.*`` events.
    """

    def __init__(
        self,
        descriptor: BackendDescriptor,
        deps: BackendDependencies | None = None,
        *,
        dialect: Dialect | None = None,
        transport: HttpTransport | None = None,
        client: httpx.AsyncClient | None = None,
        max_tool_rounds: int = 8,
        timeout: float = 120.0,
        model_load_attempts: int = 30,
        model_load_interval: float = 1.0,
        event_bus: EventBus | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.capabilities = descriptor.capabilities
        self.deps = deps or BackendDependencies()
        self.dialect = dialect or self._default_dialect()
        self.transport = transport or HttpTransport(
            descriptor.name, client=client, timeout=timeout,
        )
        self.max_tool_rounds = max_tool_rounds
        self.event_bus = event_bus
        self.session: ModelSession | None = None
        if descriptor.local_models:
            self.session = ModelSession(
                self.transport, model_load_attempts, model_load_interval,
            )
        self._background: set[asyncio.Task[Any]] = set()

    def _default_dialect(self) -> Dialect | None:
        if self.capabilities.tool_format == "custom":
            return None
        return dialect_for(self.capabilities.tool_format)

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def aclose(self) -> None:
        await self.transport.aclose()

    # ------------------------------------------------------------------
    # Prompt and tool strategy
    # ------------------------------------------------------------------

    def system_prompt(self) -> str:
        return default_system_prompt(self.id)

    def augment_prompt_with_tools(self, base: str, tools: Iterable[Any]) -> str:
        """Append tool descriptions and the calling convention to *base*."""
        return augment_prompt_with_tools(base, self._specs(tools))

    def normalize_tools(self, tools: Iterable[Any]) -> list[dict[str, Any]]:
        """Tool definitions in this backend's wire shape."""
        if self.dialect is None or not self.capabilities.supports_tools:
            return []
        return self.dialect.tool_schemas(
            self._specs(tools), ToolNameMap(), self.capabilities,
        )

    def validate_tool_call(
        self, call: ToolCall, available: Iterable[str] | None = None,
    ) -> ValidationResult:
        errors: list[str] = []
        if not call.name or not call.name.strip():
            errors.append("Tool call has no name")
        if not isinstance(call.arguments, dict):
            errors.append("Tool arguments must be an object")
        if available is not None and call.name:
            names = list(available)
            if call.name not in names:
                errors.append(f"Unknown tool: {call.name}")
        return ValidationResult(valid=not errors, errors=errors)

    @staticmethod
    def _specs(tools: Iterable[Any]) -> list[ToolSpec]:
        specs: list[ToolSpec] = []
        for raw in tools or []:
            spec = ToolSpec.from_any(raw)
            if spec is None:
                _logger.warning("Ignoring tool definition without a name: %r", raw)
                continue
            specs.append(spec)
        return specs

    def _system_for(self, settings: ChatSettings, tools: list[ToolSpec]) -> str:
        base = settings.system_prompt or self.system_prompt()
        if tools and self.capabilities.text_tools:
            return self.augment_prompt_with_tools(base, tools)
        return base

    def _offered(self, settings: ChatSettings, tools: list[ToolSpec]) -> list[ToolSpec]:
        if not tools or not settings.tool_calling or not self.capabilities.supports_tools:
            return []
        return tools

    # ------------------------------------------------------------------
    # Turn API
    # ------------------------------------------------------------------

    async def send(
        self,
        message: Message | MessageContent,
        settings: ChatSettings,
        history: list[Message] | None = None,
        on_token: TokenCallback | None = None,
        cancel: CancelToken | None = None,
        *,
        tools: Iterable[Any] | None = None,
        conversation_id: str = "",
    ) -> UnifiedResponse:
        """Resolve one conversational turn, including every tool round.

        Parameters
        ----------
        message:
            The user's turn: text, content items or a ready ``Message``.
        history:
            Earlier messages, owned by the caller.  Extended in place while
            tool rounds run and restored before returning.
        on_token:
            Streaming callback; its presence selects streaming unless
            ``settings.stream`` says otherwise.
        tools:
            Tools to offer.  When omitted, ``deps.list_tools`` is asked.
        """
        current = message if isinstance(message, Message) else Message(
            role="user", content=message,
        )
        specs = self._specs(tools) if tools is not None else await self.fetch_tools(settings)
        loop = ResumeLoop(
            self.complete,
            ToolExecutor(self.deps, self.id, self.event_bus),
            max_rounds=self.max_tool_rounds,
            event_bus=self.event_bus,
            backend_id=self.id,
        )
        with TurnHistory(history, current) as turn:
            prior = list(turn.prior)
            response = await loop.run(turn, settings, specs, on_token, cancel)

        if response.tool_calls and self.deps.summarize_results is not None:
            summary = await call_maybe_async(self.deps.summarize_results, response.tool_calls)
            response.tool_summary = summary or ""
        self._remember(current, response, prior, conversation_id)
        return response

    async def fetch_tools(self, settings: ChatSettings) -> list[ToolSpec]:
        """Ask the injected tool lister for the tools to offer this turn."""
        if (
            self.deps.list_tools is None
            or not settings.tool_calling
            or not self.capabilities.supports_tools
        ):
            return []
        raw = await call_maybe_async(self.deps.list_tools, self.id, settings)
        specs = self._specs(raw or [])
        _logger.debug("%s: %d tool(s) available", self.id, len(specs))
        return specs

    def _remember(
        self,
        current: Message,
        response: UnifiedResponse,
        history: list[Message],
        conversation_id: str,
    ) -> None:
        if self.deps.create_memory is None:
            return
        task = asyncio.ensure_future(call_maybe_async(
            self.deps.create_memory, current.text, response.content, history, conversation_id,
        ))
        self._background.add(task)
        task.add_done_callback(self._memory_done)

    def _memory_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error(
                "Memory writer failed for %s", self.id, exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def complete(
        self,
        messages: list[Message],
        settings: ChatSettings,
        tools: list[ToolSpec],
        on_token: TokenCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> Completion:
        """One backend round trip, with wire names mapped back and
        text-embedded tool calls recovered."""
        cancellation.check(cancel)
        if self.dialect is None:
            raise BackendError(self.name, "No chat dialect for this backend")
        base_url = settings.base_url or self.descriptor.base_url
        if not base_url:
            raise BackendError(self.name, "No base URL configured", "set base_url for this backend")
        if self.descriptor.requires_api_key and not settings.api_key:
            raise BackendError(self.name, "API key required", "set api_key for this backend")

        offered = self._offered(settings, tools)
        names = ToolNameMap()
        schemas = self.dialect.tool_schemas(offered, names, self.capabilities) if offered else []
        system = self._system_for(settings, offered)
        prepared = self._prepare_messages(messages)
        stream = settings.wants_stream(on_token is not None) and self.capabilities.supports_streaming

        payload = self.dialect.build_payload(
            system, prepared, settings, schemas, stream, names, self.capabilities,
        )
        url = self.dialect.chat_url(base_url, settings, stream)
        headers = self.dialect.headers(settings, self.descriptor)

        if self.session is not None:
            await self.session.ensure_loaded(settings.model, base_url, headers, cancel)

        if stream:
            completion = await self.transport.stream(
                url, payload,
                lambda lines: self.dialect.read_stream(lines, on_token, cancel),
                headers, cancel=cancel, tools_sent=bool(schemas),
            )
        else:
            data = await self.transport.post_json(
                url, payload, headers, cancel=cancel, tools_sent=bool(schemas),
            )
            completion = self.dialect.parse_response(data)
            await deliver(on_token, completion.content)

        for call in completion.tool_calls:
            call.name = names.original(call.name)
        if offered and not completion.tool_calls:
            completion.tool_calls = self._recover(completion.content, offered)

        if completion.usage is None:
            prompt_text = "\n".join([system, *(m.text for m in prepared)])
            completion.usage = estimate_usage(prompt_text, completion.content)
        return completion

    def _recover(self, content: str, tools: list[ToolSpec]) -> list[ToolCall]:
        """Text-embedded calls; prose matching only for prompt-based tools."""
        recoverer = ToolCallRecoverer(
            param_hints=_param_hints(tools),
            natural_language=self.capabilities.text_tools,
        )
        calls = recoverer.recover(content, [t.name for t in tools])
        if calls:
            _logger.info(
                "%s: recovered %d tool call(s) from text: %s",
                self.id, len(calls), ", ".join(c.name for c in calls),
            )
        return calls

    def _prepare_messages(self, messages: list[Message]) -> list[Message]:
        if self.capabilities.supports_vision:
            return messages
        prepared: list[Message] = []
        for msg in messages:
            if isinstance(msg.content, list) and msg.images:
                _logger.warning(
                    "%s does not accept images; dropping %d image(s)", self.name, len(msg.images),
                )
                text_items = [ContentItem(type="text", text=msg.text)] if msg.text else []
                msg = Message(
                    role=msg.role, content=text_items or msg.text,
                    tool_calls=msg.tool_calls, tool_call_id=msg.tool_call_id,
                    name=msg.name, is_error=msg.is_error,
                )
            prepared.append(msg)
        return prepared

    # ------------------------------------------------------------------
    # Model discovery
    # ------------------------------------------------------------------

    async def list_models(self, api_key: str = "", base_url: str = "") -> list[str]:
        """Model names the backend reports, or the built-in fallback list."""
        base = (base_url or self.descriptor.base_url).rstrip("/")
        listing = self.descriptor.model_listing
        fallback = list(FALLBACK_MODELS.get(self.id, []))
        if listing == "none" or not base or self.dialect is None:
            return fallback
        headers = self.dialect.headers(ChatSettings(model="", api_key=api_key), self.descriptor)
        try:
            if listing == "ollama":
                data = await self.transport.get_json(
                    f"{base.removesuffix('/v1')}/api/tags", headers,
                )
                models = [m.get("name", "") for m in _model_entries(data, "models")]
            elif listing == "gemini":
                data = await self.transport.get_json(f"{base}/models", headers)
                models = [
                    m.get("name", "").removeprefix("models/")
                    for m in _model_entries(data, "models")
                    if "generateContent" in (m.get("supportedGenerationMethods") or [])
                ]
            else:
                data = await self.transport.get_json(f"{base}/models", headers)
                models = [m.get("id", "") for m in _model_entries(data, "data")]
        except BackendError as exc:
            _logger.warning("Model discovery failed for %s: %s", self.id, exc)
            return fallback
        models = [m for m in models if m]
        return models or fallback


def _model_entries(data: Any, key: str) -> list[dict[str, Any]]:
    """Model objects under *key*; a bare JSON array is taken as the list itself."""
    items = data.get(key) if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    return [m for m in items if isinstance(m, dict)]


def _param_hints(tools: list[ToolSpec]) -> dict[str, str]:
    """Primary parameter per tool: first required, else first declared."""
    hints: dict[str, str] = {}
    for tool in tools:
        props = list((tool.parameters.get("properties") or {}).keys())
        required = [p for p in tool.parameters.get("required") or [] if p in props]
        if required or props:
            hints[tool.name] = (required or props)[0]
    return hints
