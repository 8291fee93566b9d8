"""
Google Gemini provider.

Uses the Generative Language REST API. Streaming asks for SSE
(``alt=sse``), but the body is decoded according to the content type the
server actually sends: SSE or NDJSON line by line, anything else as a
single JSON object or array.
"""

import json
import re
from typing import Any

import structlog

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

SAFETY_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "LANGUAGE"}

UNSUPPORTED_SCHEMA_KEYS = {"additionalProperties", "$schema"}


def map_finish_reason(reason: str | None, has_tool_calls: bool = False) -> StopReason:
    if reason == "MAX_TOKENS":
        return StopReason.MAX_TOKENS
    if reason in SAFETY_FINISH_REASONS:
        return StopReason.STOP_SEQUENCE
    return StopReason.TOOL_USE if has_tool_calls else StopReason.END_TURN


def sanitize_schema(schema: Any) -> Any:
    """Drop JSON Schema keywords the Gemini API rejects."""
    if isinstance(schema, dict):
        return {k: sanitize_schema(v) for k, v in schema.items() if k not in UNSUPPORTED_SCHEMA_KEYS}
    if isinstance(schema, list):
        return [sanitize_schema(v) for v in schema]
    return schema


def _usage(data: Any) -> UsageInfo:
    if not isinstance(data, dict):
        return UsageInfo()
    return UsageInfo(
        input_tokens=token_count(data.get("promptTokenCount")),
        output_tokens=token_count(data.get("candidatesTokenCount")),
        cache_read_input_tokens=token_count(data.get("cachedContentTokenCount")),
    )


class GeminiStreamTranslator(StreamTranslator):
    """Maps GenerateContentResponse objects onto canonical events.

    Gemini delivers function calls whole, so each one becomes a complete
    start/delta/stop run with a synthesized ``{name}_{n}`` id.
    """

    def __init__(self, provider: str, model: str = ""):
        super().__init__(provider, model)
        self._tool_count = 0

    def translate(self, payload: Any, event_name: str | None) -> list[StreamEvent]:
        payload = self.require_dict(payload, "response")
        b = self.builder

        if "error" in payload:
            error = self.optional_dict(payload.get("error"), "error")
            error_type = error.get("status") or error.get("code") or "api_error"
            return b.error(str(error_type), self.require_str(error.get("message"), "error message"))

        # Validate the whole response before the builder sees any of it.
        candidates = self.require_list(payload.get("candidates"), "candidates")[:1]
        candidate = self.require_dict(candidates[0], "candidate") if candidates else {}
        content = self.optional_dict(candidate.get("content"), "content")
        parts = []
        for part in self.require_list(content.get("parts"), "parts"):
            part = self.require_dict(part, "part")
            if part.get("thought"):
                continue
            if "text" in part:
                parts.append(("text", self.require_str(part["text"], "text")))
            elif "functionCall" in part:
                call = self.require_dict(part["functionCall"], "functionCall")
                self.require_str(call.get("name"), "function name")
                self.require_str(call.get("id"), "function call id")
                self.optional_dict(call.get("args"), "function args")
                parts.append(("call", call))
        finish_reason = self.require_str(candidate.get("finishReason"), "finishReason")

        events = b.start(
            message_id=self.require_str(payload.get("responseId"), "responseId"),
            model=self.require_str(payload.get("modelVersion"), "modelVersion"),
        )
        if payload.get("usageMetadata"):
            b.usage = b.usage.updated_with(_usage(payload["usageMetadata"]))

        for kind, value in parts:
            if kind == "text":
                events += b.text(value)
            else:
                events += self._function_call(value)
        if finish_reason:
            events += b.stop(stop_reason=map_finish_reason(finish_reason, b.has_tool_calls))

        return events

    def _function_call(self, call: dict[str, Any]) -> list[StreamEvent]:
        b = self.builder
        name = call.get("name") or ""
        key = ("tool", self._tool_count)
        tool_id = call.get("id") or f"{name}_{self._tool_count}"
        self._tool_count += 1

        events = b.open_block(key, "tool_use", tool_id=tool_id, tool_name=name)
        events += b.tool_arguments(key, json.dumps(call.get("args") or {}))
        return events + b.close(key)


class GeminiProvider(BaseProvider):
    """Google Gemini provider."""

    id = "gemini"
    name = "Google Gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    api_key_env = ("GEMINI_API_KEY", "GOOGLE_API_KEY")
    supported_models = (re.compile(r"^gemini-"), re.compile(r"^models/gemini-"))

    def _headers(self) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-goog-api-key": self.api_key,
        }

    def _model_url(self, model: str, method: str) -> str:
        path = model if model.startswith("models/") else f"models/{model}"
        return f"{self.base_url}/{path}:{method}"

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Gemini contents.

        Tool results are sent as ``functionResponse`` parts, which need the
        function name; it is recovered from the matching tool_use block.
        """
        contents: list[dict[str, Any]] = []
        tool_names: dict[str, str] = {}

        for msg in messages:
            role = "model" if msg.role == "assistant" else "user"
            if isinstance(msg.content, str):
                contents.append({"role": role, "parts": [{"text": msg.content}]})
                continue

            parts: list[dict[str, Any]] = []
            responses: list[dict[str, Any]] = []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    parts.append({"text": block.text})
                elif isinstance(block, ImageBlock):
                    if block.source.type == "url":
                        parts.append({"fileData": {"mimeType": block.source.media_type, "fileUri": block.source.url}})
                    else:
                        parts.append({"inlineData": {"mimeType": block.source.media_type, "data": block.source.data}})
                elif isinstance(block, ToolUseBlock):
                    tool_names[block.id] = block.name
                    parts.append({"functionCall": {"name": block.name, "args": block.input}})
                elif isinstance(block, ToolResultBlock):
                    key = "error" if block.is_error else "output"
                    responses.append({
                        "functionResponse": {
                            "name": tool_names.get(block.tool_use_id, block.tool_use_id),
                            "response": {key: block.text},
                        }
                    })

            if responses:
                contents.append({"role": "user", "parts": responses})
            if parts:
                contents.append({"role": role, "parts": parts})

        return contents

    def _convert_tools(self, tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "functionDeclarations": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": sanitize_schema(tool.input_schema),
                    }
                    for tool in tools
                ]
            }
        ]

    def build_request_body(self, request: LLMRequest) -> dict[str, Any]:
        messages, system = split_system_messages(request.messages, request.system_prompt)
        config = request.config

        generation: dict[str, Any] = {"maxOutputTokens": config.max_tokens or self.default_max_tokens}
        if config.temperature is not None:
            generation["temperature"] = config.temperature
        if config.top_p is not None:
            generation["topP"] = config.top_p
        if config.top_k is not None:
            generation["topK"] = config.top_k
        if config.stop_sequences:
            generation["stopSequences"] = config.stop_sequences

        body: dict[str, Any] = {
            "contents": self._convert_messages(messages),
            "generationConfig": generation,
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
            body["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        return body

    def parse_response(self, data: dict[str, Any], model: str = "") -> LLMResponse:
        candidate = (data.get("candidates") or [{}])[0]
        content: list[ContentBlock] = []
        tool_count = 0

        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought"):
                continue
            if "text" in part:
                content.append(TextBlock(text=part["text"]))
            elif "functionCall" in part:
                call = part["functionCall"]
                name = call.get("name", "")
                content.append(ToolUseBlock(
                    id=call.get("id") or f"{name}_{tool_count}",
                    name=name,
                    input=call.get("args") or {},
                ))
                tool_count += 1

        return LLMResponse(
            id=data.get("responseId", ""),
            model=data.get("modelVersion") or model,
            content=content,
            stop_reason=map_finish_reason(candidate.get("finishReason"), tool_count > 0),
            usage=_usage(data.get("usageMetadata")),
        )

    async def complete(self, request: LLMRequest) -> LLMResponse:
        response = await self._send(
            self._model_url(request.config.model, "generateContent"),
            self.build_request_body(request),
            stream=False,
            signal=request.abort_signal,
        )
        return self.parse_response(self._json(response), request.config.model)

    async def stream(self, request: LLMRequest, options: StreamOptions | None = None) -> EventStream:
        response = await self._send(
            self._model_url(request.config.model, "streamGenerateContent"),
            self.build_request_body(request),
            stream=True,
            signal=request.abort_signal,
            params={"alt": "sse"},
        )
        translator = GeminiStreamTranslator(self.id, request.config.model)

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type or "ndjson" in content_type:
            return EventStream.from_response(
                response, translator, options, request.abort_signal, allow_bare_json=True
            )

        logger.debug("Decoding non-streamed response body", provider=self.id, content_type=content_type)
        return EventStream.from_json_body(response, translator, options, request.abort_signal)
