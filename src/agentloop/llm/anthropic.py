"""
Anthropic Claude provider.

Speaks the Messages API directly over httpx. Streaming responses are
server-sent events whose ``data`` payloads carry a ``type`` field.
"""

import re
from typing import Any

import structlog

from ..errors import StreamDecodeError
from .base import (
    BaseProvider,
    ContentBlock,
    ImageBlock,
    LLMRequest,
    LLMResponse,
    Message,
    StopReason,
    StreamOptions,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    UsageInfo,
    split_system_messages,
    token_count,
)
from .events import StreamEvent
from .sse import EventStream, StreamTranslator

logger = structlog.get_logger()

ANTHROPIC_VERSION = "2023-06-01"


def _stop_reason(value: Any) -> StopReason | None:
    if value is None:
        return None
    try:
        return StopReason(value)
    except ValueError:
        return StopReason.END_TURN


def _usage(data: Any) -> UsageInfo:
    if not isinstance(data, dict):
        return UsageInfo()
    return UsageInfo(
        input_tokens=token_count(data.get("input_tokens")),
        output_tokens=token_count(data.get("output_tokens")),
        cache_creation_input_tokens=token_count(data.get("cache_creation_input_tokens")),
        cache_read_input_tokens=token_count(data.get("cache_read_input_tokens")),
    )


class AnthropicStreamTranslator(StreamTranslator):
    """Maps Messages API stream events onto canonical events.

    Vendor block indices are remapped so that blocks we do not surface
    (thinking, server tools) leave no gaps in the canonical indices.
    """

    def __init__(self, provider: str, model: str = ""):
        super().__init__(provider, model)
        self._skipped: set[int] = set()

    def translate(self, payload: Any, event_name: str | None) -> list[StreamEvent]:
        payload = self.require_dict(payload, "stream event")
        kind = payload.get("type") or event_name
        b = self.builder

        if kind == "ping":
            return []

        if kind == "message_start":
            message = self.optional_dict(payload.get("message"), "message")
            return b.start(
                message_id=self.require_str(message.get("id"), "message id"),
                model=self.require_str(message.get("model"), "model"),
                usage=_usage(message.get("usage")),
            )

        if kind == "content_block_start":
            index = self._index(payload)
            block = self.require_dict(payload.get("content_block"), "content_block")
            block_type = block.get("type")
            if block_type == "text":
                text = self.require_str(block.get("text"), "text")
                return b.open_block(index, "text") + b.text(text, key=index)
            if block_type == "tool_use":
                tool_id = self.require_str(block.get("id"), "tool id")
                tool_name = self.require_str(block.get("name"), "tool name")
                return b.open_block(index, "tool_use", tool_id=tool_id, tool_name=tool_name)
            self._skipped.add(index)
            logger.debug("Skipping content block", provider=self.provider, block_type=block_type)
            return []

        if kind == "content_block_delta":
            index = self._index(payload)
            if index in self._skipped:
                return []
            delta = self.require_dict(payload.get("delta"), "delta")
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return b.text(self.require_str(delta.get("text"), "text"), key=index)
            if delta_type == "input_json_delta":
                return b.tool_arguments(index, self.require_str(delta.get("partial_json"), "partial_json"))
            return []

        if kind == "content_block_stop":
            index = self._index(payload)
            if index in self._skipped:
                return []
            return b.close(index)

        if kind == "message_delta":
            delta = self.optional_dict(payload.get("delta"), "delta")
            stop_reason = _stop_reason(self.require_str(delta.get("stop_reason"), "stop_reason") or None)
            stop_sequence = self.require_str(delta.get("stop_sequence"), "stop_sequence") or None
            return b.message_delta(stop_reason=stop_reason, usage=_usage(payload.get("usage")), stop_sequence=stop_sequence)

        if kind == "message_stop":
            return b.stop()

        if kind == "error":
            error = self.optional_dict(payload.get("error"), "error")
            error_type = self.require_str(error.get("type"), "error type") or "api_error"
            return b.error(error_type, self.require_str(error.get("message"), "error message"))

        raise StreamDecodeError(f"Unknown stream event type {kind!r}", raw=str(payload)[:200])

    def _index(self, payload: dict[str, Any]) -> int:
        index = payload.get("index")
        if not isinstance(index, int):
            raise StreamDecodeError("Stream event is missing a block index", raw=str(payload)[:200])
        return index


class AnthropicProvider(BaseProvider):
    """Anthropic Claude provider."""

    id = "anthropic"
    name = "Anthropic"
    default_base_url = "https://api.anthropic.com"
    api_key_env = ("ANTHROPIC_API_KEY",)
    supported_models = (re.compile(r"^claude-"),)

    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/v1/messages"

    def _convert_block(self, block: ContentBlock) -> dict[str, Any]:
        if isinstance(block, TextBlock):
            return {"type": "text", "text": block.text}
        if isinstance(block, ImageBlock):
            if block.source.type == "url":
                source = {"type": "url", "url": block.source.url}
            else:
                source = {
                    "type": "base64",
                    "media_type": block.source.media_type,
                    "data": block.source.data,
                }
            return {"type": "image", "source": source}
        if isinstance(block, ToolUseBlock):
            return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
        if isinstance(block, ToolResultBlock):
            content: Any = block.content
            if not isinstance(content, str):
                content = [self._convert_block(b) for b in content]
            return {
                "type": "tool_result",
                "tool_use_id": block.tool_use_id,
                "content": content,
                "is_error": block.is_error,
            }
        raise TypeError(f"Unsupported content block: {block!r}")

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Anthropic format. System messages are dropped here."""
        converted = []
        for msg in messages:
            if msg.role == "system":
                continue
            if isinstance(msg.content, str):
                converted.append({"role": msg.role, "content": msg.content})
            else:
                converted.append({
                    "role": msg.role,
                    "content": [self._convert_block(b) for b in msg.content],
                })
        return converted

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.input_schema,
            }
            for tool in tools
        ]

    def build_request_body(self, request: LLMRequest, stream: bool) -> dict[str, Any]:
        messages, system = split_system_messages(request.messages, request.system_prompt)
        config = request.config

        body: dict[str, Any] = {
            "model": config.model,
            "max_tokens": config.max_tokens or self.default_max_tokens,
            "messages": self._convert_messages(messages),
        }
        if stream:
            body["stream"] = True
        if system:
            body["system"] = system
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if config.top_k is not None:
            body["top_k"] = config.top_k
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
        return body

    def parse_response(self, data: dict[str, Any]) -> LLMResponse:
        content: list[ContentBlock] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                content.append(TextBlock(text=block.get("text", "")))
            elif block.get("type") == "tool_use":
                tool_input = block.get("input")
                content.append(ToolUseBlock(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    input=dict(tool_input) if isinstance(tool_input, dict) else {},
                ))

        return LLMResponse(
            id=data.get("id", ""),
            model=data.get("model", ""),
            content=content,
            stop_reason=_stop_reason(data.get("stop_reason")) or StopReason.END_TURN,
            usage=_usage(data.get("usage")),
            stop_sequence=data.get("stop_sequence"),
        )

    async def complete(self, request: LLMRequest) -> LLMResponse:
        response = await self._send(
            self.messages_url,
            self.build_request_body(request, stream=False),
            stream=False,
            signal=request.abort_signal,
        )
        return self.parse_response(self._json(response))

    async def stream(self, request: LLMRequest, options: StreamOptions | None = None) -> EventStream:
        response = await self._send(
            self.messages_url,
            self.build_request_body(request, stream=True),
            stream=True,
            signal=request.abort_signal,
        )
        translator = AnthropicStreamTranslator(self.id, request.config.model)
        return EventStream.from_response(response, translator, options, request.abort_signal)
