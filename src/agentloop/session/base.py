"""
Session configuration, state and the events a session yields.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Union

from ..hooks.base import HooksConfig
from ..llm.base import Message, ModelConfig, StopReason, ToolResultBlock, ToolUseBlock, UsageInfo, generate_id
from ..tools.base import ToolDefinition
from ..tools.registry import AllowedTools
from .compaction import CompactionConfig

PermissionCallback = Callable[[str, dict[str, Any]], Awaitable[bool]]


class SessionPhase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    CLOSED = "closed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionConfig:
    """How a session talks to the model and what it may do."""

    model: Union[str, ModelConfig] = "claude-sonnet-4-20250514"
    system_prompt: str | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    allowed_tools: AllowedTools | None = None
    max_turns: int | None = None
    hooks: HooksConfig | None = None
    compaction: CompactionConfig | None = None
    permission_callback: PermissionCallback | None = None
    cwd: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def model_config(self) -> ModelConfig:
        if isinstance(self.model, ModelConfig):
            return self.model
        return ModelConfig(model=self.model)


@dataclass
class SessionState:
    """Everything that is persisted about a session."""

    id: str = field(default_factory=lambda: generate_id("sess"))
    messages: list[Message] = field(default_factory=list)
    usage: UsageInfo = field(default_factory=UsageInfo)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    parent_id: str | None = None


# Events yielded by Session.receive()


@dataclass
class MessageEvent:
    message: Message
    type: Literal["message"] = "message"


@dataclass
class TextEvent:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ToolUseEvent:
    tool_use: ToolUseBlock
    type: Literal["tool_use"] = "tool_use"


@dataclass
class ToolResultEvent:
    tool_use: ToolUseBlock
    result: ToolResultBlock
    type: Literal["tool_result"] = "tool_result"


@dataclass
class StopEvent:
    """The end of a receive() call.

    ``stop_reason`` is a model StopReason, or one of ``max_turns``,
    ``hook_stopped`` and ``aborted``.
    """

    stop_reason: Union[StopReason, str]
    usage: UsageInfo = field(default_factory=UsageInfo)
    reason: str | None = None
    type: Literal["stop"] = "stop"


@dataclass
class SessionErrorEvent:
    error: Exception
    type: Literal["error"] = "error"

    @property
    def message(self) -> str:
        return str(self.error)


SessionEvent = Union[MessageEvent, TextEvent, ToolUseEvent, ToolResultEvent, StopEvent, SessionErrorEvent]
