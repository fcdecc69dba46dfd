"""Backends with their own request shapes: n8n webhooks and Replicate.

Neither supports tools or token streaming; usage is estimated unless the
backend reports it.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from chat_harness import cancel as cancellation
from chat_harness.backends.adapter import ChatBackend
from chat_harness.cancel import CancelToken
from chat_harness.errors import BackendError, BackendProtocolError
from chat_harness.llm.stream import TokenCallback, deliver
from chat_harness.llm.text_utils import clean_response, estimate_usage
from chat_harness.types import ChatSettings, Completion, Message, ToolSpec, Usage

_logger = logging.getLogger(__name__)


def _flatten(msg: Message) -> str:
    """Text of a message; structured content is sent as JSON."""
    if isinstance(msg.content, str):
        return msg.content
    return json.dumps([
        {"type": item.type, "text": item.text, "image_url": item.image_url}
        for item in msg.content
    ])


def _split_current(messages: list[Message]) -> tuple[list[Message], Message]:
    if not messages:
        return [], Message(role="user", content="")
    return messages[:-1], messages[-1]


# ---------------------------------------------------------------------------
# n8n
# ---------------------------------------------------------------------------

_N8N_CONTENT_KEYS = ("response", "message", "content", "output", "text")


class N8NBackend(ChatBackend):
    """POSTs the turn to an n8n workflow webhook (``settings.base_url``)."""

    async def complete(
        self,
        messages: list[Message],
        settings: ChatSettings,
        tools: list[ToolSpec],
        on_token: TokenCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> Completion:
        cancellation.check(cancel)
        url = settings.base_url or self.descriptor.base_url
        if not url:
            raise BackendError(
                self.name, "No webhook URL configured", "set base_url to the workflow webhook",
            )
        history, current = _split_current(messages)
        system = settings.system_prompt or self.system_prompt()
        payload = {
            "message": _flatten(current),
            "conversationHistory": [
                {"role": m.role, "content": _flatten(m)} for m in history
            ],
            "settings": {
                "model": settings.model,
                "temperature": settings.temperature,
                "maxTokens": settings.max_tokens,
                "systemPrompt": system,
            },
        }
        headers = {"Content-Type": "application/json", **dict(self.descriptor.headers)}
        data = await self.transport.post_json(url, payload, headers, cancel=cancel)
        content = clean_response(self._content(data))
        if not content:
            raise BackendProtocolError(self.name, "Workflow returned an empty response")
        await deliver(on_token, content)
        usage = self._usage(data)
        if usage is None:
            prompt_text = "\n".join([system, *(m.text for m in messages)])
            usage = estimate_usage(prompt_text, content)
        return Completion(content=content, usage=usage, finish_reason="stop")

    @staticmethod
    def _content(data: Any) -> str:
        if isinstance(data, str):
            return data
        if isinstance(data, list) and len(data) == 1:
            data = data[0]
        if isinstance(data, dict):
            for key in _N8N_CONTENT_KEYS:
                value = data.get(key)
                if value:
                    return value if isinstance(value, str) else json.dumps(value)
            if any(key in data for key in _N8N_CONTENT_KEYS):
                return ""
        return json.dumps(data)

    @staticmethod
    def _usage(data: Any) -> Usage | None:
        raw = data.get("usage") if isinstance(data, dict) else None
        if not isinstance(raw, dict):
            return None
        prompt = int(raw.get("promptTokens") or raw.get("prompt_tokens") or 0)
        completion = int(raw.get("completionTokens") or raw.get("completion_tokens") or 0)
        total = int(raw.get("totalTokens") or raw.get("total_tokens") or 0)
        return Usage(prompt, completion, total or prompt + completion)


# ---------------------------------------------------------------------------
# Replicate
# ---------------------------------------------------------------------------

_TERMINAL = ("succeeded", "failed", "canceled")


class ReplicateBackend(ChatBackend):
    """Creates a Replicate prediction and polls it until it finishes.

    ``settings.model`` is either ``owner/name`` (latest version) or
    ``owner/name:version``.
    """

    poll_interval = 5.0
    poll_attempts = 60

    def headers(self, settings: ChatSettings) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Token {settings.api_key}",
            **dict(self.descriptor.headers),
        }

    @staticmethod
    def build_prompt(system: str, messages: list[Message]) -> str:
        lines: list[str] = []
        if system:
            lines.append(f"System: {system}")
        for msg in messages:
            role = "User" if msg.role == "user" else "Assistant"
            if msg.role == "system":
                role = "System"
            lines.append(f"{role}: {msg.text}")
        lines.append("Assistant:")
        return "\n\n".join(lines)

    async def complete(
        self,
        messages: list[Message],
        settings: ChatSettings,
        tools: list[ToolSpec],
        on_token: TokenCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> Completion:
        cancellation.check(cancel)
        if not settings.api_key:
            raise BackendError(self.name, "API key required", "set api_key for this backend")
        base = (settings.base_url or self.descriptor.base_url).rstrip("/")
        system = settings.system_prompt or self.system_prompt()
        prompt = self.build_prompt(system, messages)
        body: dict[str, Any] = {
            "input": {
                "prompt": prompt,
                "max_new_tokens": settings.max_tokens,
                "temperature": settings.temperature,
            },
        }
        model, _, version = settings.model.partition(":")
        if version:
            url = f"{base}/predictions"
            body["version"] = version
        else:
            url = f"{base}/models/{model}/predictions"
        headers = self.headers(settings)

        data = await self.transport.post_json(url, body, headers, cancel=cancel)
        data = await self._wait(data or {}, headers, cancel)
        content = self._output(data.get("output"))
        await deliver(on_token, content)
        return Completion(
            content=content,
            usage=estimate_usage(prompt, content),
            finish_reason="stop",
        )

    async def _wait(
        self, data: dict[str, Any], headers: dict[str, str], cancel: CancelToken | None,
    ) -> dict[str, Any]:
        for _ in range(self.poll_attempts):
            status = data.get("status", "")
            if status == "succeeded":
                return data
            if status in _TERMINAL:
                raise BackendError(
                    self.name, f"Prediction {status}: {data.get('error') or 'no details'}",
                )
            poll_url = (data.get("urls") or {}).get("get")
            if not poll_url:
                raise BackendProtocolError(self.name, "Prediction has no polling URL")
            _logger.debug("Replicate prediction %s is %s", data.get("id", "?"), status)
            await cancellation.sleep(cancel, self.poll_interval)
            data = await self.transport.get_json(poll_url, headers, cancel=cancel) or {}
        raise BackendError(self.name, "Prediction timed out", "try again or pick a faster model")

    @staticmethod
    def _output(output: Any) -> str:
        if output is None:
            return ""
        if isinstance(output, list):
            return "".join(str(part) for part in output)
        if isinstance(output, str):
            return output
        return json.dumps(output)


CUSTOM_BACKENDS: dict[str, type[ChatBackend]] = {
    "n8n": N8NBackend,
    "replicate": ReplicateBackend,
}
