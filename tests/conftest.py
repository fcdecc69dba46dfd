"""Shared fixtures: a routed fake HTTP server behind httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from chat_harness.types import ToolSpec


def sse_body(*frames: Any, done: bool = True) -> bytes:
    """Encode frames as ``text/event-stream``; strings are sent verbatim."""
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def openai_message(content: str = "", tool_calls: list | None = None, usage: dict | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    body: dict = {
        "choices": [{
            "message": message,
            "finish_reason": "tool_calls" if tool_calls else "stop",
        }],
    }
    if usage is not None:
        body["usage"] = usage
    return body


def content_frame(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


class FakeServer:
    """Answers requests from per-route queues.

    The last queued answer of a route is reused for further requests, so a
    route registered once behaves like a static endpoint.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Callable[[httpx.Request], httpx.Response]]] = {}

    def add(self, method: str, path: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self._routes.setdefault((method.upper(), path), []).append(responder)

    def add_json(self, method: str, path: str, body: Any, status: int = 200) -> None:
        self.add(method, path, lambda request: httpx.Response(status, json=body))

    def add_text(self, method: str, path: str, text: str, status: int = 200) -> None:
        self.add(method, path, lambda request: httpx.Response(status, text=text))

    def add_sse(self, path: str, *frames: Any, done: bool = True) -> None:
        content = sse_body(*frames, done=done)
        self.add("POST", path, lambda request: httpx.Response(
            200, content=content, headers={"content-type": "text/event-stream"},
        ))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, text=f"no route for {request.method} {request.url.path}")
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def bodies(self, method: str = "POST") -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == method]


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
async def client(server: FakeServer):
    async with server.client() as c:
        yield c


@pytest.fixture
def web_search() -> ToolSpec:
    return ToolSpec(
        name="web_search",
        description="Search the web",
        parameters={
            "type": "object",
            "properties": {"query": {"type": "string", "description": "Search query"}},
            "required": ["query"],
        },
    )


@pytest.fixture
def read_file() -> ToolSpec:
    return ToolSpec(
        name="read_file",
        description="Read a file",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    )
