"""
Base classes and canonical data model for LLM providers.
"""

import os
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Literal, Protocol, Union

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ..cancellation import AbortSignal
from ..errors import ProviderConfigurationError, ProviderError, ProviderHttpError

if TYPE_CHECKING:
    from .events import StreamEvent
    from .sse import EventStream

logger = structlog.get_logger()


def generate_id(prefix: str) -> str:
    """Generate a random identifier such as ``msg_3f2a...``."""
    return f"{prefix}_{secrets.token_hex(12)}"


class StopReason(str, Enum):
    """Why the model stopped producing output."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    TOOL_USE = "tool_use"


@dataclass
class UsageInfo:
    """Token usage for one or more model calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def __add__(self, other: "UsageInfo") -> "UsageInfo":
        return UsageInfo(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens + other.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens + other.cache_read_input_tokens,
        )

    def updated_with(self, other: "UsageInfo") -> "UsageInfo":
        """Return a copy where every non-zero field of ``other`` replaces ours.

        Vendors report running totals for the current message, so a later
        report supersedes an earlier one field by field.
        """
        return UsageInfo(
            input_tokens=other.input_tokens or self.input_tokens,
            output_tokens=other.output_tokens or self.output_tokens,
            cache_creation_input_tokens=other.cache_creation_input_tokens or self.cache_creation_input_tokens,
            cache_read_input_tokens=other.cache_read_input_tokens or self.cache_read_input_tokens,
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def token_count(value: Any) -> int:
    """Read a vendor token count, treating anything but a non-negative int as 0."""
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return max(value, 0)


# Content blocks


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ImageSource:
    """Inline base64 image data or a URL."""

    type: Literal["base64", "url"] = "base64"
    media_type: str = "image/png"
    data: str = ""
    url: str = ""

    def as_data_url(self) -> str:
        if self.type == "url":
            return self.url
        return f"data:{self.media_type};base64,{self.data}"


@dataclass
class ImageBlock:
    source: ImageSource
    type: Literal["image"] = "image"


@dataclass
class ToolUseBlock:
    """A tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"


@dataclass
class ToolResultBlock:
    """The answer to a tool call, sent back on the user side."""

    tool_use_id: str
    content: Union[str, list["ContentBlock"]] = ""
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class Message:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system"]
    content: Union[str, list[ContentBlock]]
    id: str = field(default_factory=lambda: generate_id("msg"))
    stop_reason: StopReason | None = None
    usage: UsageInfo | None = None

    @property
    def blocks(self) -> list[ContentBlock]:
        """Content as a block list, wrapping plain strings in a TextBlock."""
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]


@dataclass
class ModelConfig:
    """Model selection and sampling parameters."""

    model: str
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None


class ToolSpec(Protocol):
    """What a provider needs to know about a tool."""

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...


@dataclass
class LLMRequest:
    """A single request to a provider."""

    messages: list[Message]
    config: ModelConfig
    tools: list[ToolSpec] = field(default_factory=list)
    system_prompt: str | None = None
    abort_signal: AbortSignal | None = None


@dataclass
class LLMResponse:
    """A complete, non-streamed model answer."""

    id: str
    model: str
    content: list[ContentBlock]
    stop_reason: StopReason
    usage: UsageInfo = field(default_factory=UsageInfo)
    stop_sequence: str | None = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


@dataclass
class StreamOptions:
    """Optional callbacks invoked while a stream is consumed.

    Callbacks may be plain functions or coroutines.
    """

    on_event: Callable[["StreamEvent"], Any] | None = None
    on_text: Callable[[str], Any] | None = None
    on_tool_use: Callable[[ToolUseBlock], Any] | None = None


def split_system_messages(messages: list[Message], system_prompt: str | None) -> tuple[list[Message], str | None]:
    """Separate system-role messages and fold them into one system prompt."""
    parts = [system_prompt] if system_prompt else []
    conversation = []
    for message in messages:
        if message.role == "system":
            if message.text:
                parts.append(message.text)
        else:
            conversation.append(message)
    return conversation, ("\n\n".join(parts) if parts else None)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProviderHttpError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying provider request",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


class BaseProvider(ABC):
    """Base class for LLM providers.

    Subclasses describe their vendor (``id``, ``name``, credentials and
    model patterns) and translate requests and streams. Transport, retries
    and status checking live here.
    """

    id: str = ""
    name: str = ""
    default_base_url: str = ""
    api_key_env: tuple[str, ...] = ()
    supported_models: tuple[re.Pattern[str], ...] = ()

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_max_tokens: int = 4096,
        timeout: float = 600.0,
        max_retries: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or _api_key_from_env(self.api_key_env)
        if not self.api_key:
            raise ProviderConfigurationError(
                f"{self.name} API key is required. "
                f"Set {' or '.join(self.api_key_env)} or pass api_key."
            )
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.default_max_tokens = default_max_tokens
        self.max_retries = max_retries
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    def supports_model(self, model: str) -> bool:
        """Check whether this provider claims ``model``."""
        return any(pattern.search(model) for pattern in self.supported_models)

    @abstractmethod
    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Send a request and wait for the whole answer."""
        pass

    @abstractmethod
    async def stream(self, request: LLMRequest, options: StreamOptions | None = None) -> "EventStream":
        """Send a streaming request.

        HTTP failures raise ProviderHttpError here, before any event is
        produced. The returned EventStream owns the open response.
        """
        pass

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "BaseProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _headers(self) -> dict[str, str]:
        return {"content-type": "application/json"}

    async def _send(
        self,
        url: str,
        body: dict[str, Any],
        *,
        stream: bool,
        signal: AbortSignal | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """POST ``body`` and return a response with a 2xx status.

        Connection failures, 429 and 5xx answers are retried with
        exponential backoff.
        """
        response: httpx.Response | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                response = await self._send_once(url, body, stream=stream, signal=signal, params=params)
        assert response is not None
        return response

    async def _send_once(
        self,
        url: str,
        body: dict[str, Any],
        *,
        stream: bool,
        signal: AbortSignal | None,
        params: dict[str, str] | None,
    ) -> httpx.Response:
        request = self._http.build_request("POST", url, json=body, headers=self._headers(), params=params)
        logger.debug("Sending provider request", provider=self.id, url=url, stream=stream)

        send = self._http.send(request, stream=stream)
        response = await signal.race(send) if signal is not None else await send

        if not response.is_success:
            try:
                await response.aread()
                text = response.text
            finally:
                await response.aclose()
            logger.warning(
                "Provider request failed",
                provider=self.id,
                status_code=response.status_code,
            )
            raise ProviderHttpError(self.id, response.status_code, text)
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned invalid JSON", original_error=e) from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} returned an unexpected response shape")
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"


def _api_key_from_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None
