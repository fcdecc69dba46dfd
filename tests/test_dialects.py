"""Tests for per-backend wire grammars."""

from __future__ import annotations

import json

import pytest

from chat_harness.backends.dialects import (
    AnthropicDialect,
    GeminiDialect,
    OpenAIDialect,
    TextToolDialect,
    dialect_for,
    split_data_url,
)
from chat_harness.config import DEFAULT_BACKENDS, CapabilityProfile
from chat_harness.llm.text_utils import ToolNameMap
from chat_harness.types import ChatSettings, ContentItem, Message, ToolCall, ToolSpec

from conftest import sse_body

IMAGE = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(model="test-model", temperature=0.2, max_tokens=256, api_key="key-123")


@pytest.fixture
def exchange() -> list[Message]:
    """A user turn followed by one tool round with two calls."""
    calls = [
        ToolCall(name="web_search", arguments={"query": "paris"}, id="c1"),
        ToolCall(name="read_file", arguments={"path": "a.txt"}, id="c2"),
    ]
    return [
        Message(role="user", content="weather?"),
        Message(role="assistant", content="", tool_calls=calls),
        Message(role="tool", content="sunny", tool_call_id="c1", name="web_search"),
        Message(role="tool", content="Error (not_found): no file", tool_call_id="c2",
                name="read_file", is_error=True),
    ]


async def _lines(body: bytes):
    for line in body.decode().splitlines():
        yield line


def _payload(dialect, messages, settings, tools=(), caps=None, stream=False, system="SYS"):
    caps = caps or CapabilityProfile()
    names = ToolNameMap()
    schemas = dialect.tool_schemas(list(tools), names, caps) if tools else []
    return dialect.build_payload(system, messages, settings, schemas, stream, names, caps)


class TestOpenAI:
    def test_payload_shape(self, settings, web_search):
        payload = _payload(OpenAIDialect(), [Message(role="user", content="hi")], settings, [web_search])
        assert payload["model"] == "test-model"
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 256
        assert payload["stream"] is False
        assert payload["tool_choice"] == "auto"
        assert payload["tools"] == [web_search.to_openai_schema()]
        assert payload["messages"] == [
            {"role": "system", "content": "SYS"},
            {"role": "user", "content": "hi"},
        ]

    def test_tool_exchange_grammar(self, settings, exchange):
        messages = _payload(OpenAIDialect(), exchange, settings)["messages"]
        assert messages[2] == {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": "c1", "type": "function",
                 "function": {"name": "web_search", "arguments": '{"query": "paris"}'}},
                {"id": "c2", "type": "function",
                 "function": {"name": "read_file", "arguments": '{"path": "a.txt"}'}},
            ],
        }
        assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "sunny", "name": "web_search"}
        assert messages[4]["tool_call_id"] == "c2"
        assert messages[4]["content"].startswith("Error (not_found)")

    def test_image_content(self, settings):
        msg = Message(role="user", content=[
            ContentItem(type="text", text="what is this?"),
            ContentItem(type="image_url", image_url=IMAGE),
        ])
        rendered = _payload(OpenAIDialect(), [msg], settings)["messages"][1]["content"]
        assert rendered == [
            {"type": "text", "text": "what is this?"},
            {"type": "image_url", "image_url": {"url": IMAGE}},
        ]

    def test_system_folded_into_first_user_message(self, settings):
        caps = CapabilityProfile(supports_system_messages=False)
        messages = _payload(
            OpenAIDialect(), [Message(role="user", content="hi")], settings, caps=caps,
        )["messages"]
        assert messages == [{"role": "user", "content": "SYS\n\nhi"}]

    def test_long_names_shortened_on_the_wire(self, settings):
        long_name = "mcp__" + "very_long_tool_name_" * 4
        caps = CapabilityProfile(max_tool_name_length=64)
        names = ToolNameMap()
        schemas = OpenAIDialect().tool_schemas([ToolSpec(name=long_name)], names, caps)
        wire = schemas[0]["function"]["name"]
        assert len(wire) <= 64
        assert names.original(wire) == long_name

    def test_headers(self, settings):
        headers = OpenAIDialect().headers(settings, DEFAULT_BACKENDS["openrouter"])
        assert headers["Authorization"] == "Bearer key-123"
        assert headers["X-Title"] == "chat-harness"

    def test_no_auth_header_without_key(self):
        headers = OpenAIDialect().headers(ChatSettings(model="m"), DEFAULT_BACKENDS["ollama"])
        assert "Authorization" not in headers

    def test_parse_response(self):
        data = {
            "choices": [{
                "message": {
                    "content": None,
                    "tool_calls": [
                        {"id": "1", "type": "function",
                         "function": {"name": "web_search", "arguments": '{"query": "paris weather"}'}},
                        {"id": "2", "type": "function", "function": {"name": "", "arguments": "{}"}},
                    ],
                },
                "finish_reason": "tool_calls",
            }],
            "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
        }
        completion = OpenAIDialect().parse_response(data)
        assert completion.content == ""
        assert [(c.id, c.name, c.arguments) for c in completion.tool_calls] == [
            ("1", "web_search", {"query": "paris weather"}),
        ]
        assert completion.usage.total_tokens == 7
        assert completion.finish_reason == "tool_calls"

    def test_chat_url(self, settings):
        assert OpenAIDialect().chat_url("http://h/v1/", settings, True) == "http://h/v1/chat/completions"


class TestTextTools:
    def test_no_native_tools(self, settings, web_search):
        payload = _payload(TextToolDialect(), [Message(role="user", content="hi")], settings, [web_search])
        assert "tools" not in payload
        assert "tool_choice" not in payload

    def test_exchange_rendered_as_text(self, settings, exchange):
        exchange[1].content = '```json\n{"tool_call": {"name": "web_search"}}\n```'
        messages = _payload(TextToolDialect(), exchange, settings)["messages"]

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[2]["content"] == exchange[1].content
        results = messages[3]["content"]
        assert results.startswith("Tool results:")
        assert "### web_search\nsunny" in results
        assert "### read_file (error)" in results

    def test_assistant_without_text_gets_call_json(self, settings, exchange):
        messages = _payload(TextToolDialect(), exchange, settings)["messages"]
        first_line = messages[2]["content"].splitlines()[0]
        assert json.loads(first_line) == {
            "tool_call": {"name": "web_search", "arguments": {"query": "paris"}},
        }


class TestAnthropic:
    def test_headers(self, settings):
        headers = AnthropicDialect().headers(settings, DEFAULT_BACKENDS["anthropic"])
        assert headers["x-api-key"] == "key-123"
        assert headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in headers

    def test_payload(self, settings, web_search, exchange):
        extra_system = Message(role="system", content="Be brief.")
        payload = _payload(AnthropicDialect(), [extra_system, *exchange], settings, [web_search])

        assert payload["system"] == "SYS\n\nBe brief."
        assert payload["tools"] == [{
            "name": "web_search",
            "description": "Search the web",
            "input_schema": web_search.parameters,
        }]
        assert payload["tool_choice"] == {"type": "auto"}
        messages = payload["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"][0] == {
            "type": "tool_use", "id": "c1", "name": "web_search", "input": {"query": "paris"},
        }
        assert messages[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "c1", "content": "sunny", "is_error": False},
            {"type": "tool_result", "tool_use_id": "c2",
             "content": "Error (not_found): no file", "is_error": True},
        ]

    def test_images(self, settings):
        msg = Message(role="user", content=[
            ContentItem(type="image_url", image_url=IMAGE),
            ContentItem(type="image_url", image_url="https://example.com/cat.jpg"),
        ])
        blocks = _payload(AnthropicDialect(), [msg], settings)["messages"][0]["content"]
        assert blocks[0] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo="},
        }
        assert blocks[1]["source"] == {"type": "url", "url": "https://example.com/cat.jpg"}

    def test_parse_response(self):
        completion = AnthropicDialect().parse_response({
            "content": [
                {"type": "text", "text": "Let me check."},
                {"type": "tool_use", "id": "tu_1", "name": "web_search", "input": {"query": "x"}},
            ],
            "usage": {"input_tokens": 10, "output_tokens": 5},
            "stop_reason": "tool_use",
        })
        assert completion.content == "Let me check."
        assert [(c.id, c.name, c.arguments) for c in completion.tool_calls] == [
            ("tu_1", "web_search", {"query": "x"}),
        ]
        assert (completion.usage.prompt_tokens, completion.usage.total_tokens) == (10, 15)

    async def test_stream(self):
        body = sse_body(
            {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "tool_use", "id": "tu_1", "name": "web_search", "input": {}}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": '{"query":'}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": ' "x"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 9}},
            {"type": "message_stop"},
            done=False,
        )
        tokens: list[str] = []
        completion = await AnthropicDialect().read_stream(_lines(body), tokens.append, None)

        assert completion.content == "Hi"
        assert tokens == ["Hi"]
        assert [(c.id, c.name, c.arguments) for c in completion.tool_calls] == [
            ("tu_1", "web_search", {"query": "x"}),
        ]
        assert (completion.usage.prompt_tokens, completion.usage.completion_tokens) == (12, 9)
        assert completion.finish_reason == "tool_use"


class TestGemini:
    def test_urls(self):
        settings = ChatSettings(model="models/gemini-1.5-pro")
        base = "https://g.test/v1beta"
        dialect = GeminiDialect()
        assert dialect.chat_url(base, settings, False) == f"{base}/models/gemini-1.5-pro:generateContent"
        assert dialect.chat_url(base, settings, True) == (
            f"{base}/models/gemini-1.5-pro:streamGenerateContent?alt=sse"
        )

    def test_key_in_header(self, settings):
        headers = GeminiDialect().headers(settings, DEFAULT_BACKENDS["gemini"])
        assert headers["x-goog-api-key"] == "key-123"

    def test_payload(self, settings, exchange):
        tool = ToolSpec(
            name="web search",
            description="",
            parameters={"type": "object", "additionalProperties": False,
                        "properties": {"q": {"type": "string", "default": ""}}},
        )
        exchange[1].tool_calls[0].name = "web search"
        exchange[2].name = "web search"
        payload = _payload(GeminiDialect(), exchange, settings, [tool])

        assert payload["systemInstruction"] == {"parts": [{"text": "SYS"}]}
        assert payload["generationConfig"] == {"temperature": 0.2, "maxOutputTokens": 256}
        decl = payload["tools"][0]["functionDeclarations"][0]
        assert decl["name"] == "web_search"
        assert decl["description"] == "Tool: web search"
        assert decl["parameters"] == {"type": "object", "properties": {"q": {"type": "string"}}}

        contents = payload["contents"]
        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[1]["parts"][0] == {"functionCall": {"name": "web_search", "args": {"query": "paris"}}}
        assert contents[2]["parts"][0] == {
            "functionResponse": {"name": "web_search", "response": {"content": "sunny"}},
        }
        assert len(contents[2]["parts"]) == 2

    def test_inline_image(self, settings):
        msg = Message(role="user", content=[ContentItem(type="image_url", image_url=IMAGE)])
        part = _payload(GeminiDialect(), [msg], settings)["contents"][0]["parts"][0]
        assert part == {"inline_data": {"mime_type": "image/png", "data": "iVBORw0KGgo="}}

    def test_parse_response(self):
        completion = GeminiDialect().parse_response({
            "candidates": [{
                "content": {"parts": [
                    {"text": "Checking"},
                    {"functionCall": {"name": "web_search", "args": {"query": "x"}}},
                ]},
                "finishReason": "STOP",
            }],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 6, "totalTokenCount": 10},
        })
        assert completion.content == "Checking"
        assert [(c.name, c.arguments, c.id) for c in completion.tool_calls] == [("web_search", {"query": "x"}, "")]
        assert completion.usage.total_tokens == 10

    async def test_stream(self):
        body = sse_body(
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}],
             "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 1, "totalTokenCount": 3}},
            done=False,
        )
        tokens: list[str] = []
        completion = await GeminiDialect().read_stream(_lines(body), tokens.append, None)
        assert completion.content == "Hello"
        assert tokens == ["Hel", "lo"]
        assert completion.usage.total_tokens == 3
        assert completion.finish_reason == "STOP"


class TestDialectLookup:
    @pytest.mark.parametrize("fmt, cls", [
        ("openai", OpenAIDialect),
        ("text", TextToolDialect),
        ("anthropic", AnthropicDialect),
        ("gemini", GeminiDialect),
    ])
    def test_dialect_for(self, fmt, cls):
        assert type(dialect_for(fmt)) is cls

    def test_custom_has_no_dialect(self):
        with pytest.raises(ValueError):
            dialect_for("custom")

    def test_split_data_url(self):
        assert split_data_url(IMAGE) == ("image/png", "iVBORw0KGgo=")
        assert split_data_url("https://example.com/a.png") is None
