"""
OpenAI provider.

OpenAI serves models from two endpoints with different wire formats: Chat
Completions (``/chat/completions``) and Responses (``/responses``). The
endpoint is picked by model family; when the vendor answers that the model
lives on the other endpoint, the request is retried there once and the
choice is remembered for that model.
"""

import json
import re
from typing import Any, Literal

import httpx
import structlog

from ..errors import ProviderHttpError, StreamDecodeError
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
from .events import StreamEvent, parse_tool_arguments
from .sse import EventStream, ServerSentEvent, StreamTranslator

logger = structlog.get_logger()

Endpoint = Literal["chat", "responses"]

RESPONSES_MODEL_PATTERN = re.compile(r"^(gpt-5|o3|o4|codex|computer-use)")

FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "content_filter": StopReason.STOP_SEQUENCE,
}

INCOMPLETE_REASONS = {
    "max_output_tokens": StopReason.MAX_TOKENS,
    "content_filter": StopReason.STOP_SEQUENCE,
}


def _chat_usage(data: Any) -> UsageInfo:
    if not isinstance(data, dict):
        return UsageInfo()
    details = data.get("prompt_tokens_details")
    if not isinstance(details, dict):
        details = {}
    return UsageInfo(
        input_tokens=token_count(data.get("prompt_tokens")),
        output_tokens=token_count(data.get("completion_tokens")),
        cache_read_input_tokens=token_count(details.get("cached_tokens")),
    )


def _responses_usage(data: Any) -> UsageInfo:
    if not isinstance(data, dict):
        return UsageInfo()
    details = data.get("input_tokens_details")
    if not isinstance(details, dict):
        details = {}
    return UsageInfo(
        input_tokens=token_count(data.get("input_tokens")),
        output_tokens=token_count(data.get("output_tokens")),
        cache_read_input_tokens=token_count(details.get("cached_tokens")),
    )


def is_wrong_endpoint(error: ProviderHttpError, endpoint: Endpoint) -> bool:
    """Whether ``error`` says the model is served by the other endpoint."""
    if error.status_code == 404:
        return True
    if error.status_code != 400:
        return False
    body = error.body.lower()
    other = "v1/responses" if endpoint == "chat" else "v1/chat/completions"
    return other in body or "not supported" in body or "not a chat model" in body


class ChatCompletionsTranslator(StreamTranslator):
    """Maps Chat Completions chunks onto canonical events.

    Text goes into one block; each ``tool_calls[].index`` becomes its own
    tool_use block. The stream ends with the literal ``[DONE]``.
    """

    def feed(self, event: ServerSentEvent) -> list[StreamEvent]:
        if event.payload is None and event.data.strip() == "[DONE]":
            return self.builder.stop()
        return super().feed(event)

    def translate(self, payload: Any, event_name: str | None) -> list[StreamEvent]:
        payload = self.require_dict(payload, "chunk")
        b = self.builder

        if "error" in payload:
            error = payload.get("error") or {}
            if isinstance(error, str):
                return b.error("api_error", error)
            error = self.require_dict(error, "error")
            error_type = error.get("type") or error.get("code") or "api_error"
            return b.error(str(error_type), self.require_str(error.get("message"), "error message"))

        # Validate the whole chunk before the builder sees any of it.
        choices = self.require_list(payload.get("choices"), "choices")[:1]
        choice = self.require_dict(choices[0], "choice") if choices else {}
        delta = self.optional_dict(choice.get("delta"), "delta")
        content = self.require_str(delta.get("content"), "content")
        calls = []
        for call in self.require_list(delta.get("tool_calls"), "tool_calls"):
            call = self.require_dict(call, "tool call")
            function = self.optional_dict(call.get("function"), "function")
            index = call.get("index", 0)
            if not isinstance(index, int):
                raise StreamDecodeError("Tool call index is not an integer", raw=str(call)[:200])
            calls.append((
                ("tool", index),
                self.require_str(call.get("id"), "tool call id"),
                self.require_str(function.get("name"), "function name"),
                self.require_str(function.get("arguments"), "function arguments"),
            ))
        finish_reason = self.require_str(choice.get("finish_reason"), "finish_reason")

        events = b.start(
            message_id=self.require_str(payload.get("id"), "id"),
            model=self.require_str(payload.get("model"), "model"),
        )
        if payload.get("usage"):
            b.usage = b.usage.updated_with(_chat_usage(payload["usage"]))

        if content:
            events += b.text(content)
        for key, tool_id, tool_name, arguments in calls:
            if key not in b:
                events += b.open_block(key, "tool_use", tool_id=tool_id, tool_name=tool_name)
            events += b.tool_arguments(key, arguments)
        if finish_reason:
            b.stop_reason = FINISH_REASONS.get(finish_reason, StopReason.END_TURN)
            events += b.close_all()

        return events


class ResponsesTranslator(StreamTranslator):
    """Maps Responses API events onto canonical events."""

    def translate(self, payload: Any, event_name: str | None) -> list[StreamEvent]:
        payload = self.require_dict(payload, "event")
        kind = payload.get("type") or event_name or ""
        b = self.builder

        if kind in ("response.created", "response.in_progress"):
            response = self.optional_dict(payload.get("response"), "response")
            return b.start(
                message_id=self.require_str(response.get("id"), "response id"),
                model=self.require_str(response.get("model"), "response model"),
            )

        if kind == "response.output_item.added":
            item = self.require_dict(payload.get("item"), "item")
            if item.get("type") != "function_call":
                return b.start()
            key = self._item_key(item, payload)
            tool_id = self.require_str(item.get("call_id"), "call_id") or self.require_str(item.get("id"), "item id")
            tool_name = self.require_str(item.get("name"), "function name")
            arguments = self.require_str(item.get("arguments"), "arguments")
            events = b.open_block(key, "tool_use", tool_id=tool_id, tool_name=tool_name)
            return events + b.tool_arguments(key, arguments)

        if kind == "response.output_text.delta":
            return b.text(self.require_str(payload.get("delta"), "delta"))

        if kind == "response.function_call_arguments.delta":
            key = self.require_str(payload.get("item_id"), "item_id")
            return b.tool_arguments(key, self.require_str(payload.get("delta"), "delta"))

        if kind == "response.output_item.done":
            item = self.require_dict(payload.get("item"), "item")
            if item.get("type") == "function_call":
                key = self._item_key(item, payload)
                arguments = self.require_str(item.get("arguments"), "arguments")
                events: list[StreamEvent] = []
                if key in b and not b.arguments_seen(key):
                    events += b.tool_arguments(key, arguments)
                return events + b.close(key)
            if item.get("type") == "message" and b.open_block_kind == "text":
                return b.close_all()
            return []

        if kind in ("response.completed", "response.incomplete"):
            response = self.optional_dict(payload.get("response"), "response")
            stop_reason = None
            if kind == "response.incomplete":
                details = self.optional_dict(response.get("incomplete_details"), "incomplete_details")
                reason = details.get("reason")
                stop_reason = INCOMPLETE_REASONS.get(reason, StopReason.MAX_TOKENS)
            return b.stop(stop_reason=stop_reason, usage=_responses_usage(response.get("usage")))

        if kind == "response.failed":
            response = self.optional_dict(payload.get("response"), "response")
            error = self.optional_dict(response.get("error"), "error")
            code = self.require_str(error.get("code"), "error code")
            return b.error(code or "api_error", self.require_str(error.get("message"), "error message"))

        if kind == "error":
            code = self.require_str(payload.get("code"), "error code")
            return b.error(code or "api_error", self.require_str(payload.get("message"), "error message"))

        if kind.startswith("response."):
            return []

        raise StreamDecodeError(f"Unknown stream event type {kind!r}", raw=str(payload)[:200])

    def _item_key(self, item: dict[str, Any], payload: dict[str, Any]) -> Any:
        item_id = self.require_str(item.get("id"), "item id")
        return item_id or ("call", payload.get("output_index"))


class OpenAIProvider(BaseProvider):
    """OpenAI GPT provider."""

    id = "openai"
    name = "OpenAI"
    default_base_url = "https://api.openai.com/v1"
    api_key_env = ("OPENAI_API_KEY",)
    supported_models = (
        re.compile(r"^gpt-"),
        re.compile(r"^o1"),
        re.compile(r"^o3"),
        re.compile(r"^o4"),
        re.compile(r"^chatgpt"),
        re.compile(r"^codex"),
    )

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        organization: str | None = None,
        api: Literal["auto", "chat", "responses"] = "auto",
        **kwargs: Any,
    ):
        super().__init__(api_key=api_key, base_url=base_url, **kwargs)
        self.organization = organization
        self.api = api
        self._endpoints: dict[str, Endpoint] = {}

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "authorization": f"Bearer {self.api_key}",
        }
        if self.organization:
            headers["openai-organization"] = self.organization
        return headers

    def endpoint_for(self, model: str) -> Endpoint:
        """Endpoint used for ``model``: forced, remembered, or by model family."""
        if self.api != "auto":
            return self.api
        if model in self._endpoints:
            return self._endpoints[model]
        return "responses" if RESPONSES_MODEL_PATTERN.search(model) else "chat"

    def _url(self, endpoint: Endpoint) -> str:
        path = "/responses" if endpoint == "responses" else "/chat/completions"
        return f"{self.base_url}{path}"

    # Chat Completions

    def _image_url(self, block: ImageBlock) -> str:
        return block.source.as_data_url()

    def _convert_chat_messages(self, messages: list[Message], system: str | None) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        if system:
            converted.append({"role": "system", "content": system})

        for msg in messages:
            if isinstance(msg.content, str):
                converted.append({"role": msg.role, "content": msg.content})
                continue

            if msg.role == "assistant":
                text = "".join(b.text for b in msg.content if isinstance(b, TextBlock))
                entry: dict[str, Any] = {"role": "assistant", "content": text or None}
                tool_calls = [
                    {
                        "id": b.id,
                        "type": "function",
                        "function": {"name": b.name, "arguments": json.dumps(b.input)},
                    }
                    for b in msg.content
                    if isinstance(b, ToolUseBlock)
                ]
                if tool_calls:
                    entry["tool_calls"] = tool_calls
                converted.append(entry)
                continue

            parts: list[dict[str, Any]] = []
            for block in msg.content:
                if isinstance(block, ToolResultBlock):
                    converted.append({
                        "role": "tool",
                        "tool_call_id": block.tool_use_id,
                        "content": block.text,
                    })
                elif isinstance(block, TextBlock):
                    parts.append({"type": "text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    parts.append({"type": "image_url", "image_url": {"url": self._image_url(block)}})
            if parts:
                converted.append({"role": "user", "content": parts})

        return converted

    def _convert_chat_tools(self, tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in tools
        ]

    def build_chat_body(self, request: LLMRequest, stream: bool) -> dict[str, Any]:
        messages, system = split_system_messages(request.messages, request.system_prompt)
        config = request.config

        body: dict[str, Any] = {
            "model": config.model,
            "messages": self._convert_chat_messages(messages, system),
            "max_completion_tokens": config.max_tokens or self.default_max_tokens,
        }
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if config.stop_sequences:
            body["stop"] = config.stop_sequences
        if request.tools:
            body["tools"] = self._convert_chat_tools(request.tools)
        return body

    def parse_chat_response(self, data: dict[str, Any]) -> LLMResponse:
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}

        content: list[ContentBlock] = []
        if message.get("content"):
            content.append(TextBlock(text=message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            content.append(ToolUseBlock(
                id=call.get("id", ""),
                name=function.get("name", ""),
                input=parse_tool_arguments(function.get("arguments") or ""),
            ))

        return LLMResponse(
            id=data.get("id", ""),
            model=data.get("model", ""),
            content=content,
            stop_reason=FINISH_REASONS.get(choice.get("finish_reason"), StopReason.END_TURN),
            usage=_chat_usage(data.get("usage")),
        )

    # Responses

    def _convert_responses_input(self, messages: list[Message]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for msg in messages:
            if isinstance(msg.content, str):
                items.append({"role": msg.role, "content": msg.content})
                continue

            if msg.role == "assistant":
                text = "".join(b.text for b in msg.content if isinstance(b, TextBlock))
                if text:
                    items.append({"role": "assistant", "content": text})
                for block in msg.content:
                    if isinstance(block, ToolUseBlock):
                        items.append({
                            "type": "function_call",
                            "call_id": block.id,
                            "name": block.name,
                            "arguments": json.dumps(block.input),
                        })
                continue

            parts: list[dict[str, Any]] = []
            for block in msg.content:
                if isinstance(block, ToolResultBlock):
                    items.append({
                        "type": "function_call_output",
                        "call_id": block.tool_use_id,
                        "output": block.text,
                    })
                elif isinstance(block, TextBlock):
                    parts.append({"type": "input_text", "text": block.text})
                elif isinstance(block, ImageBlock):
                    parts.append({"type": "input_image", "image_url": self._image_url(block)})
            if parts:
                items.append({"role": "user", "content": parts})

        return items

    def build_responses_body(self, request: LLMRequest, stream: bool) -> dict[str, Any]:
        messages, system = split_system_messages(request.messages, request.system_prompt)
        config = request.config

        body: dict[str, Any] = {
            "model": config.model,
            "input": self._convert_responses_input(messages),
            "max_output_tokens": config.max_tokens or self.default_max_tokens,
            "store": False,
        }
        if stream:
            body["stream"] = True
        if system:
            body["instructions"] = system
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                }
                for tool in request.tools
            ]
        return body

    def parse_responses_response(self, data: dict[str, Any]) -> LLMResponse:
        content: list[ContentBlock] = []
        for item in data.get("output") or []:
            if item.get("type") == "message":
                for part in item.get("content") or []:
                    if part.get("type") == "output_text":
                        content.append(TextBlock(text=part.get("text", "")))
            elif item.get("type") == "function_call":
                content.append(ToolUseBlock(
                    id=item.get("call_id") or item.get("id", ""),
                    name=item.get("name", ""),
                    input=parse_tool_arguments(item.get("arguments") or ""),
                ))

        if data.get("status") == "incomplete":
            reason = (data.get("incomplete_details") or {}).get("reason")
            stop_reason = INCOMPLETE_REASONS.get(reason, StopReason.MAX_TOKENS)
        elif any(isinstance(b, ToolUseBlock) for b in content):
            stop_reason = StopReason.TOOL_USE
        else:
            stop_reason = StopReason.END_TURN

        return LLMResponse(
            id=data.get("id", ""),
            model=data.get("model", ""),
            content=content,
            stop_reason=stop_reason,
            usage=_responses_usage(data.get("usage")),
        )

    # Transport

    def _body(self, endpoint: Endpoint, request: LLMRequest, stream: bool) -> dict[str, Any]:
        if endpoint == "responses":
            return self.build_responses_body(request, stream)
        return self.build_chat_body(request, stream)

    async def _open(self, request: LLMRequest, stream: bool) -> tuple[httpx.Response, Endpoint]:
        model = request.config.model
        endpoint = self.endpoint_for(model)
        try:
            response = await self._send(
                self._url(endpoint),
                self._body(endpoint, request, stream),
                stream=stream,
                signal=request.abort_signal,
            )
        except ProviderHttpError as e:
            if self.api != "auto" or not is_wrong_endpoint(e, endpoint):
                raise
            alternate: Endpoint = "chat" if endpoint == "responses" else "responses"
            logger.warning(
                "Endpoint rejected model, retrying on alternate endpoint",
                provider=self.id,
                model=model,
                rejected=endpoint,
                alternate=alternate,
                status_code=e.status_code,
            )
            endpoint = alternate
            response = await self._send(
                self._url(endpoint),
                self._body(endpoint, request, stream),
                stream=stream,
                signal=request.abort_signal,
            )

        self._endpoints[model] = endpoint
        return response, endpoint

    async def complete(self, request: LLMRequest) -> LLMResponse:
        response, endpoint = await self._open(request, stream=False)
        data = self._json(response)
        if endpoint == "responses":
            return self.parse_responses_response(data)
        return self.parse_chat_response(data)

    async def stream(self, request: LLMRequest, options: StreamOptions | None = None) -> EventStream:
        response, endpoint = await self._open(request, stream=True)
        translator: StreamTranslator
        if endpoint == "responses":
            translator = ResponsesTranslator(self.id, request.config.model)
        else:
            translator = ChatCompletionsTranslator(self.id, request.config.model)
        return EventStream.from_response(response, translator, options, request.abort_signal)
