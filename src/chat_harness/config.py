"""Backend descriptors, capability profiles and harness configuration.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./chat_harness.yaml``
  3. ``~/.config/chat-harness/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from chat_harness.types import ChatSettings

_logger = logging.getLogger(__name__)

TOOL_FORMATS = ("openai", "anthropic", "gemini", "text", "custom")


# ---------------------------------------------------------------------------
# Static descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapabilityProfile:
    """What a backend can do. Selects the adapter's strategies."""

    supports_vision: bool = True
    supports_tools: bool = True
    supports_streaming: bool = True
    supports_system_messages: bool = True
    max_tool_name_length: int | None = None
    tool_format: str = "openai"

    def __post_init__(self) -> None:
        if self.tool_format not in TOOL_FORMATS:
            raise ValueError(f"Unknown tool format: {self.tool_format!r}")

    @property
    def structured_tools(self) -> bool:
        return self.supports_tools and self.tool_format in ("openai", "anthropic", "gemini")

    @property
    def text_tools(self) -> bool:
        return self.supports_tools and self.tool_format == "text"


@dataclass(frozen=True)
class BackendDescriptor:
    """Immutable identity of one backend.

    ``model_listing`` names the discovery endpoint flavour
    (``openai``, ``ollama``, ``anthropic``, ``gemini`` or ``none``).
    ``local_models`` marks local servers that load models on demand and
    answer 503 "Loading model" meanwhile.
    """

    id: str
    name: str
    base_url: str
    requires_api_key: bool
    capabilities: CapabilityProfile = field(default_factory=CapabilityProfile)
    model_listing: str = "openai"
    local_models: bool = False
    headers: tuple[tuple[str, str], ...] = ()


_CLOUD_OPENAI = CapabilityProfile(max_tool_name_length=64)
_TEXT_LOCAL = CapabilityProfile(tool_format="text")

DEFAULT_BACKENDS: dict[str, BackendDescriptor] = {
    b.id: b
    for b in (
        BackendDescriptor(
            "openai", "OpenAI", "https://api.openai.com/v1", True, _CLOUD_OPENAI,
        ),
        BackendDescriptor(
            "anthropic", "Anthropic", "https://api.anthropic.com/v1", True,
            CapabilityProfile(max_tool_name_length=64, tool_format="anthropic"),
            model_listing="anthropic",
        ),
        BackendDescriptor(
            "gemini", "Google Gemini",
            "https://generativelanguage.googleapis.com/v1beta", True,
            CapabilityProfile(tool_format="gemini"),
            model_listing="gemini",
        ),
        BackendDescriptor(
            "mistral", "Mistral AI", "https://api.mistral.ai/v1", True, _CLOUD_OPENAI,
        ),
        BackendDescriptor(
            "deepseek", "DeepSeek", "https://api.deepseek.com/v1", True,
            CapabilityProfile(supports_vision=False, supports_tools=False),
        ),
        BackendDescriptor(
            "deepinfra", "DeepInfra", "https://api.deepinfra.com/v1/openai", True,
            _CLOUD_OPENAI,
        ),
        BackendDescriptor(
            "openrouter", "OpenRouter", "https://openrouter.ai/api/v1", True,
            _CLOUD_OPENAI,
            headers=(("HTTP-Referer", "https://github.com/chat-harness"),
                     ("X-Title", "chat-harness")),
        ),
        BackendDescriptor(
            "requesty", "Requesty", "https://router.requesty.ai/v1", True, _CLOUD_OPENAI,
        ),
        BackendDescriptor(
            "lmstudio", "LM Studio", "http://localhost:1234/v1", False, _TEXT_LOCAL,
            local_models=True,
        ),
        BackendDescriptor(
            "ollama", "Ollama (Local)", "http://localhost:11434/v1", False,
            CapabilityProfile(), model_listing="ollama",
        ),
        BackendDescriptor(
            "llamacpp", "llama.cpp", "http://127.0.0.1:8080/v1", False, _TEXT_LOCAL,
            local_models=True,
        ),
        BackendDescriptor(
            "jan", "Jan", "http://127.0.0.1:1337/v1", False, _CLOUD_OPENAI,
        ),
        BackendDescriptor(
            "replicate", "Replicate", "https://api.replicate.com/v1", True,
            CapabilityProfile(
                supports_vision=False, supports_tools=False,
                supports_streaming=False, tool_format="custom",
            ),
            model_listing="none",
        ),
        BackendDescriptor(
            "n8n", "n8n Workflow", "", False,
            CapabilityProfile(
                supports_vision=False, supports_tools=False, tool_format="custom",
            ),
            model_listing="none",
        ),
    )
}

# Returned by list_models when discovery fails
FALLBACK_MODELS: dict[str, list[str]] = {
    "openai": ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"],
    "anthropic": [
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-haiku-20240307",
    ],
    "gemini": ["gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.0-pro"],
    "mistral": [
        "mistral-medium-latest",
        "mistral-large-latest",
        "mistral-small-latest",
        "pixtral-large-latest",
        "codestral-latest",
        "open-mistral-nemo",
    ],
    "deepseek": ["deepseek-chat", "deepseek-coder"],
    "deepinfra": [
        "meta-llama/Meta-Llama-3.1-70B-Instruct",
        "mistralai/Mixtral-8x7B-Instruct-v0.1",
    ],
    "openrouter": [
        "anthropic/claude-3.5-sonnet",
        "openai/gpt-4o",
        "meta-llama/llama-3.1-405b-instruct",
        "google/gemini-pro-1.5",
    ],
    "requesty": [
        "openai/gpt-4o-mini",
        "openai/gpt-4o",
        "anthropic/claude-3-5-sonnet-latest",
    ],
    "lmstudio": ["local-model"],
    "ollama": ["llama3.2", "llama3.1", "mistral", "codellama"],
    "llamacpp": ["local-model"],
    "jan": ["llama3.2-3b-instruct"],
    "replicate": ["meta/llama-2-70b-chat", "mistralai/mixtral-8x7b-instruct-v0.1"],
    "n8n": ["n8n-workflow"],
}

DEFAULT_SETTINGS: dict[str, Any] = {
    "temperature": 0.7,
    "max_tokens": 4000,
    "tool_calling": True,
}


# ---------------------------------------------------------------------------
# User configuration
# ---------------------------------------------------------------------------

@dataclass
class BackendOverrides:
    """Per-backend values from the config file. Empty means "use default"."""

    base_url: str = ""
    api_key: str = ""
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    system_prompt: str = ""
    tool_calling: bool | None = None


@dataclass
class HarnessConfig:
    """Top-level config for Chat Harness."""

    default_backend: str = "ollama"
    backends: dict[str, BackendOverrides] = field(default_factory=dict)

    # Resume loop
    max_tool_rounds: int = 8

    # Transport
    request_timeout: float = 120.0
    model_load_attempts: int = 30
    model_load_interval: float = 1.0

    def overrides_for(self, backend_id: str) -> BackendOverrides:
        return self.backends.get(backend_id, BackendOverrides())

    def descriptor_for(self, backend_id: str) -> BackendDescriptor | None:
        """Static descriptor with the configured base URL applied."""
        desc = DEFAULT_BACKENDS.get(backend_id)
        if desc is None:
            return None
        ov = self.overrides_for(backend_id)
        if ov.base_url:
            desc = replace(desc, base_url=ov.base_url)
        return desc

    def settings_for(self, backend_id: str, **overrides: Any) -> ChatSettings:
        """Build per-request ``ChatSettings`` for *backend_id*.

        Precedence: keyword overrides, then the config file, then
        ``DEFAULT_SETTINGS`` / the first fallback model.
        """
        ov = self.overrides_for(backend_id)
        desc = DEFAULT_BACKENDS.get(backend_id)
        fallback = FALLBACK_MODELS.get(backend_id) or [""]
        values: dict[str, Any] = {
            "model": ov.model or fallback[0],
            "temperature": (
                ov.temperature if ov.temperature is not None
                else DEFAULT_SETTINGS["temperature"]
            ),
            "max_tokens": (
                ov.max_tokens if ov.max_tokens is not None
                else DEFAULT_SETTINGS["max_tokens"]
            ),
            "api_key": ov.api_key,
            "base_url": ov.base_url or (desc.base_url if desc else ""),
            "system_prompt": ov.system_prompt,
            "tool_calling": (
                ov.tool_calling if ov.tool_calling is not None
                else DEFAULT_SETTINGS["tool_calling"]
            ),
        }
        for k, v in overrides.items():
            if v is not None:
                values[k] = v
        return ChatSettings(**values)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chat_harness.yaml"),
    Path.home() / ".config" / "chat-harness" / "config.yaml",
]


def _parse_overrides(raw: dict[str, Any] | None) -> BackendOverrides:
    if not raw:
        return BackendOverrides()
    known = {k: v for k, v in raw.items() if k in BackendOverrides.__dataclass_fields__}
    unknown = set(raw) - set(known)
    if unknown:
        _logger.warning("Ignoring unknown backend keys: %s", ", ".join(sorted(unknown)))
    return BackendOverrides(**known)


def load_config(path: str | Path | None = None) -> HarnessConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    HarnessConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s (using defaults)", path)
            return HarnessConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return HarnessConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    backends: dict[str, BackendOverrides] = {}
    for backend_id, braw in (raw.get("backends") or {}).items():
        if backend_id not in DEFAULT_BACKENDS:
            _logger.warning("Config names unknown backend %r", backend_id)
        backends[backend_id] = _parse_overrides(braw)

    defaults = HarnessConfig()
    return HarnessConfig(
        default_backend=raw.get("default_backend", defaults.default_backend),
        backends=backends,
        max_tool_rounds=int(raw.get("max_tool_rounds", defaults.max_tool_rounds)),
        request_timeout=float(raw.get("request_timeout", defaults.request_timeout)),
        model_load_attempts=int(
            raw.get("model_load_attempts", defaults.model_load_attempts)
        ),
        model_load_interval=float(
            raw.get("model_load_interval", defaults.model_load_interval)
        ),
    )
