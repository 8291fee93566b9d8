"""
Tests for the Anthropic provider.
"""

import json
import os
from unittest.mock import patch

import httpx
import pytest

from agentloop.errors import ProviderConfigurationError, ProviderHttpError
from agentloop.llm.anthropic import ANTHROPIC_VERSION, AnthropicProvider
from agentloop.llm.base import (
    LLMRequest,
    Message,
    ModelConfig,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

from scripted import ChunkedStream, mock_client, split_bytes, sse_body


def _request(*messages, **kwargs) -> LLMRequest:
    return LLMRequest(
        messages=list(messages) or [Message(role="user", content="What is 2+2?")],
        config=ModelConfig(model="claude-sonnet-4-20250514"),
        **kwargs,
    )


def _answer_body() -> bytes:
    return sse_body(
        ("message_start", {
            "type": "message_start",
            "message": {
                "id": "msg_01",
                "model": "claude-sonnet-4-20250514",
                "usage": {"input_tokens": 12, "output_tokens": 1},
            },
        }),
        ("ping", {"type": "ping"}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "4"}}),
        ("content_block_stop", {"type": "content_block_stop", "index": 0}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}}),
        ("message_stop", {"type": "message_stop"}),
    )


def test_missing_api_key_raises():
    """Test that a provider cannot be built without a credential."""
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ProviderConfigurationError) as exc:
            AnthropicProvider()

    assert "ANTHROPIC_API_KEY" in str(exc.value)


def test_api_key_from_env():
    """Test that the key is read from the environment."""
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-ant-test"}, clear=True):
        provider = AnthropicProvider()

    assert provider.api_key == "sk-ant-test"
    assert provider.supports_model("claude-3-haiku-20240307")
    assert not provider.supports_model("gpt-4o")


def test_build_request_body():
    """Test message, system and tool conversion."""
    provider = AnthropicProvider(api_key="test")

    class Echo:
        name = "echo"
        description = "Echo input"
        input_schema = {"type": "object", "properties": {"text": {"type": "string"}}}

    request = _request(
        Message(role="system", content="Be brief."),
        Message(role="user", content="Say hi"),
        Message(role="assistant", content=[ToolUseBlock(id="toolu_1", name="echo", input={"text": "hi"})]),
        Message(role="user", content=[ToolResultBlock(tool_use_id="toolu_1", content="hi")]),
        system_prompt="You are helpful.",
        tools=[Echo()],
    )

    body = provider.build_request_body(request, stream=True)

    assert body["stream"] is True
    assert body["system"] == "You are helpful.\n\nBe brief."
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert body["messages"][1]["content"][0] == {"type": "tool_use", "id": "toolu_1", "name": "echo", "input": {"text": "hi"}}
    assert body["messages"][2]["content"][0]["tool_use_id"] == "toolu_1"
    assert body["tools"][0]["input_schema"]["properties"]["text"]["type"] == "string"
    assert body["max_tokens"] == 4096


@pytest.mark.asyncio
async def test_stream_text_answer_event_sequence():
    """Test the canonical events for a one-token answer."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=_answer_body())

    provider = AnthropicProvider(api_key="test-key", http_client=mock_client(handler))
    stream = await provider.stream(_request())
    events = [e async for e in stream]

    assert [e.type for e in events] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert events[0].message_id == "msg_01"
    assert events[0].usage.input_tokens == 12
    assert events[1].index == 0 and isinstance(events[1].content_block, TextBlock)
    assert events[2].delta.text == "4"
    assert events[4].stop_reason == StopReason.END_TURN
    assert events[4].usage.input_tokens == 12
    assert events[4].usage.output_tokens == 2

    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "test-key"
    assert seen["headers"]["anthropic-version"] == ANTHROPIC_VERSION
    assert seen["body"]["stream"] is True


@pytest.mark.asyncio
async def test_stream_survives_arbitrary_chunking():
    """Test that splitting the body at any byte gives the same events."""
    body = _answer_body()
    expected = None

    for size in (1, 7, 64):
        chunks = split_bytes(body, size)
        client = mock_client(lambda request, chunks=chunks: httpx.Response(200, stream=ChunkedStream(chunks)))
        provider = AnthropicProvider(api_key="test", http_client=client)
        events = [e.type async for e in await provider.stream(_request())]
        expected = expected or events
        assert events == expected

    assert expected[-1] == "message_stop"


@pytest.mark.asyncio
async def test_stream_tool_use():
    """Test that tool arguments stream as fragments and parse on close."""
    body = sse_body(
        ("message_start", {"type": "message_start", "message": {"id": "msg_02", "usage": {"input_tokens": 20}}}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}}),
        ("content_block_stop", {"type": "content_block_stop", "index": 0}),
        ("content_block_start", {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "toolu_9", "name": "get_weather"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"city": '}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"Paris"}'}}),
        ("content_block_stop", {"type": "content_block_stop", "index": 1}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 30}}),
        ("message_stop", {"type": "message_stop"}),
    )
    tool_calls = []

    from agentloop.llm.base import StreamOptions

    provider = AnthropicProvider(
        api_key="test",
        http_client=mock_client(lambda request: httpx.Response(200, content=body)),
    )
    stream = await provider.stream(_request(), StreamOptions(on_tool_use=tool_calls.append))
    events = [e async for e in stream]

    start = next(e for e in events if e.type == "content_block_start")
    assert start.index == 0
    assert start.content_block == ToolUseBlock(id="toolu_9", name="get_weather", input={})
    fragments = [e.delta.partial_json for e in events if e.type == "content_block_delta"]
    assert "".join(fragments) == '{"city": "Paris"}'
    assert tool_calls == [ToolUseBlock(id="toolu_9", name="get_weather", input={"city": "Paris"})]
    assert events[-2].stop_reason == StopReason.TOOL_USE


@pytest.mark.asyncio
async def test_stream_error_event_is_terminal():
    """Test that a vendor error inside the stream ends it with an error event."""
    body = sse_body(
        ("message_start", {"type": "message_start", "message": {"id": "msg_03"}}),
        ("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}),
        ("message_stop", {"type": "message_stop"}),
    )
    provider = AnthropicProvider(
        api_key="test",
        http_client=mock_client(lambda request: httpx.Response(200, content=body)),
    )

    events = [e async for e in await provider.stream(_request())]

    assert [e.type for e in events] == ["message_start", "error"]
    assert events[-1].error_type == "overloaded_error"
    assert events[-1].message == "Overloaded"


@pytest.mark.asyncio
async def test_stream_skips_chunks_with_unexpected_shape():
    """Test that valid JSON of the wrong shape is counted and skipped."""
    body = sse_body(
        ("message_start", {"type": "message_start", "message": {"id": "msg_05"}}),
        ("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": 7}}),
        ("content_block_stop", {"type": "content_block_stop", "index": 0}),
        ("message_delta", {"type": "message_delta", "delta": "garbage"}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 3}}),
        ("message_stop", {"type": "message_stop"}),
    )
    provider = AnthropicProvider(
        api_key="test",
        http_client=mock_client(lambda request: httpx.Response(200, content=body)),
    )

    stream = await provider.stream(_request())
    events = [e async for e in stream]

    assert [e.type for e in events] == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert events[2].delta.text == "ok"
    assert events[4].stop_reason == StopReason.END_TURN
    assert stream.decode_errors == 2


@pytest.mark.asyncio
async def test_stream_redirect_is_an_http_error():
    """Test that a 3xx answer raises instead of being read as a stream."""
    provider = AnthropicProvider(
        api_key="test",
        http_client=mock_client(lambda request: httpx.Response(302, headers={"location": "https://example.com/"})),
    )

    with pytest.raises(ProviderHttpError) as exc:
        await provider.stream(_request())

    assert exc.value.status_code == 302
    assert not exc.value.retryable


@pytest.mark.asyncio
async def test_stream_http_error_raises_before_events():
    """Test that a 401 raises from stream() and is not retried."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}})

    provider = AnthropicProvider(api_key="bad", http_client=mock_client(handler))

    with pytest.raises(ProviderHttpError) as exc:
        await provider.stream(_request())

    assert exc.value.status_code == 401
    assert exc.value.error_type == "authentication_error"
    assert "invalid x-api-key" in str(exc.value)
    assert not exc.value.retryable
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    """Test that a 529 is retried and the retry's answer is used."""
    statuses = [529, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status != 200:
            return httpx.Response(status, json={"error": {"type": "overloaded_error", "message": "busy"}})
        return httpx.Response(200, content=_answer_body())

    provider = AnthropicProvider(api_key="test", max_retries=1, http_client=mock_client(handler))

    events = [e async for e in await provider.stream(_request())]

    assert events[-1].type == "message_stop"
    assert statuses == []


@pytest.mark.asyncio
async def test_complete_parses_response():
    """Test the non-streamed Messages API answer."""
    data = {
        "id": "msg_04",
        "model": "claude-sonnet-4-20250514",
        "content": [
            {"type": "text", "text": "Checking."},
            {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": "x"}},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 5, "output_tokens": 7},
    }
    provider = AnthropicProvider(
        api_key="test",
        http_client=mock_client(lambda request: httpx.Response(200, json=data)),
    )

    response = await provider.complete(_request())

    assert response.text == "Checking."
    assert response.tool_uses[0].input == {"q": "x"}
    assert response.stop_reason == StopReason.TOOL_USE
    assert response.usage.total_tokens == 12
