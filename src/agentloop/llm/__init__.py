"""
LLM module for multi-provider model support.

Providers:
- Anthropic Claude (Messages API)
- OpenAI GPT (Chat Completions and Responses APIs)
- Google Gemini (Generative Language API)

All providers stream the same canonical event sequence.
"""

from .base import (
    BaseProvider,
    ContentBlock,
    ImageBlock,
    ImageSource,
    LLMRequest,
    LLMResponse,
    Message,
    ModelConfig,
    StopReason,
    StreamOptions,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UsageInfo,
)
from .events import (
    BlockDelta,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    ErrorEvent,
    MessageDeltaEvent,
    MessageStartEvent,
    MessageStopEvent,
    StreamEvent,
)
from .sse import EventStream
from .anthropic import AnthropicProvider
from .openai import OpenAIProvider
from .google import GeminiProvider
from .resolver import ProviderResolver
from .factory import create_provider, create_resolver

__all__ = [
    "BaseProvider",
    "ContentBlock",
    "ImageBlock",
    "ImageSource",
    "LLMRequest",
    "LLMResponse",
    "Message",
    "ModelConfig",
    "StopReason",
    "StreamOptions",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "UsageInfo",
    "BlockDelta",
    "ContentBlockDeltaEvent",
    "ContentBlockStartEvent",
    "ContentBlockStopEvent",
    "ErrorEvent",
    "MessageDeltaEvent",
    "MessageStartEvent",
    "MessageStopEvent",
    "StreamEvent",
    "EventStream",
    "AnthropicProvider",
    "OpenAIProvider",
    "GeminiProvider",
    "ProviderResolver",
    "create_provider",
    "create_resolver",
]
