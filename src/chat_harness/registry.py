"""Backend registry with plugin discovery."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points

import httpx

from chat_harness.backends.adapter import ChatBackend
from chat_harness.backends.custom import CUSTOM_BACKENDS
from chat_harness.config import DEFAULT_BACKENDS, CapabilityProfile, HarnessConfig
from chat_harness.core.executor import BackendDependencies
from chat_harness.errors import UnknownBackendError
from chat_harness.events import EventBus

_logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "chat_harness.backends"


class BackendRegistry:
    """Backend id -> adapter instance, plus capability lookup."""

    def __init__(self) -> None:
        self._backends: dict[str, ChatBackend] = {}

    def register(self, backend: ChatBackend) -> None:
        """Register an adapter, replacing any adapter with the same id."""
        if backend.id in self._backends:
            _logger.info("Replacing backend %s", backend.id)
        self._backends[backend.id] = backend

    def get(self, backend_id: str) -> ChatBackend:
        backend = self._backends.get(backend_id)
        if backend is None:
            raise UnknownBackendError(backend_id)
        return backend

    def has(self, backend_id: str) -> bool:
        return backend_id in self._backends

    def ids(self) -> list[str]:
        return list(self._backends.keys())

    def capabilities(self, backend_id: str) -> CapabilityProfile:
        return self.get(backend_id).capabilities

    def __len__(self) -> int:
        return len(self._backends)

    def __iter__(self):
        return iter(self._backends.values())

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()

    def discover(self, deps: BackendDependencies | None = None) -> None:
        """Load adapters from entry_points group ``chat_harness.backends``.

        Each entry point should be a ChatBackend instance or a callable
        taking the dependency record and returning one.
        """
        for ep in entry_points(group=ENTRY_POINT_GROUP):
            try:
                obj = ep.load()
                backend = obj if isinstance(obj, ChatBackend) else obj(deps)
                if not isinstance(backend, ChatBackend):
                    _logger.warning(
                        "Entry point %s did not return a ChatBackend: %s", ep.name, type(backend)
                    )
                    continue
                self.register(backend)
                _logger.info("Discovered plugin backend: %s", backend.id)
            except Exception:
                _logger.exception("Failed to load backend plugin: %s", ep.name)


def create_registry(
    config: HarnessConfig | None = None,
    deps: BackendDependencies | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    event_bus: EventBus | None = None,
    discover: bool = False,
) -> BackendRegistry:
    """Build one adapter per known backend, all sharing *deps*.

    Parameters
    ----------
    config:
        Harness config; base URL overrides and loop/transport limits are
        taken from it.
    client:
        Optional shared ``httpx.AsyncClient`` (tests pass a mocked one).
    discover:
        Also load plugin backends from entry points.
    """
    config = config or HarnessConfig()
    deps = deps or BackendDependencies()
    registry = BackendRegistry()
    for backend_id in DEFAULT_BACKENDS:
        descriptor = config.descriptor_for(backend_id)
        cls = CUSTOM_BACKENDS.get(backend_id, ChatBackend)
        registry.register(cls(
            descriptor,
            deps,
            client=client,
            max_tool_rounds=config.max_tool_rounds,
            timeout=config.request_timeout,
            model_load_attempts=config.model_load_attempts,
            model_load_interval=config.model_load_interval,
            event_bus=event_bus,
        ))
    if discover:
        registry.discover(deps)
    return registry
