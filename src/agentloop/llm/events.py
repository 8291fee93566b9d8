"""
Canonical stream events and the builder that produces them.

Every provider emits the same vocabulary:

    message_start
    (content_block_start content_block_delta* content_block_stop)*
    message_delta
    message_stop

or a single ``error`` event in place of the terminal ``message_stop``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Hashable, Literal, Union

import structlog

from .base import StopReason, TextBlock, ToolUseBlock, UsageInfo, generate_id

logger = structlog.get_logger()


@dataclass
class MessageStartEvent:
    message_id: str = ""
    model: str = ""
    usage: UsageInfo = field(default_factory=UsageInfo)
    type: Literal["message_start"] = "message_start"


@dataclass
class ContentBlockStartEvent:
    index: int
    content_block: Union[TextBlock, ToolUseBlock]
    type: Literal["content_block_start"] = "content_block_start"


@dataclass
class BlockDelta:
    type: Literal["text_delta", "input_json_delta"]
    text: str = ""
    partial_json: str = ""


@dataclass
class ContentBlockDeltaEvent:
    index: int
    delta: BlockDelta
    type: Literal["content_block_delta"] = "content_block_delta"


@dataclass
class ContentBlockStopEvent:
    index: int
    type: Literal["content_block_stop"] = "content_block_stop"


@dataclass
class MessageDeltaEvent:
    stop_reason: StopReason | None = None
    stop_sequence: str | None = None
    usage: UsageInfo = field(default_factory=UsageInfo)
    type: Literal["message_delta"] = "message_delta"


@dataclass
class MessageStopEvent:
    type: Literal["message_stop"] = "message_stop"


@dataclass
class ErrorEvent:
    """A vendor-level error reported inside an otherwise successful stream."""

    error_type: str = "api_error"
    message: str = ""
    type: Literal["error"] = "error"


StreamEvent = Union[
    MessageStartEvent,
    ContentBlockStartEvent,
    ContentBlockDeltaEvent,
    ContentBlockStopEvent,
    MessageDeltaEvent,
    MessageStopEvent,
    ErrorEvent,
]


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """Parse accumulated tool-call arguments, falling back to ``{}``."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Tool call arguments are not valid JSON", raw=raw[:200])
        return {}
    if not isinstance(value, dict):
        logger.warning("Tool call arguments are not a JSON object", raw=raw[:200])
        return {}
    return value


@dataclass
class _Block:
    index: int
    kind: Literal["text", "tool_use"]
    tool_id: str = ""
    tool_name: str = ""
    arguments: list[str] = field(default_factory=list)


class StreamBuilder:
    """Turns vendor happenings into canonical events.

    Translators call ``start``, ``open_block``, ``text``,
    ``tool_arguments``, ``close`` and ``stop``; the builder keeps the
    stream well formed:

    - ``message_start`` is emitted once, lazily, before the first block;
    - block indices are handed out in emission order, starting at 0;
    - at most one block is open, so opening a block closes the previous one;
    - tool arguments are collected per block and parsed when it closes;
    - exactly one terminal event is produced, after which input is ignored.

    Keys are whatever the vendor uses to identify a block (an index, an
    item id). Calls that would break the invariants are logged and dropped.
    """

    def __init__(self, provider: str = "", model: str = ""):
        self.provider = provider
        self.model = model
        self.started = False
        self.finished = False
        self.usage = UsageInfo()
        self.stop_reason: StopReason | None = None
        self.stop_sequence: str | None = None
        self.completed_tool_calls: list[ToolUseBlock] = []
        self._blocks: dict[Hashable, _Block] = {}
        self._open_key: Hashable | None = None
        self._next_index = 0
        self._delta_sent = False

    def __contains__(self, key: Hashable) -> bool:
        return key in self._blocks

    @property
    def has_tool_calls(self) -> bool:
        return any(b.kind == "tool_use" for b in self._blocks.values())

    @property
    def open_block_kind(self) -> str | None:
        if self._open_key is None:
            return None
        return self._blocks[self._open_key].kind

    def start(self, message_id: str = "", model: str = "", usage: UsageInfo | None = None) -> list[StreamEvent]:
        if usage is not None:
            self.usage = self.usage.updated_with(usage)
        if self.started or self.finished:
            return []
        self.started = True
        if model:
            self.model = model
        return [
            MessageStartEvent(
                message_id=message_id or generate_id("msg"),
                model=self.model,
                usage=UsageInfo(**vars(self.usage)),
            )
        ]

    def open_block(
        self,
        key: Hashable,
        kind: Literal["text", "tool_use"],
        tool_id: str = "",
        tool_name: str = "",
    ) -> list[StreamEvent]:
        if self.finished:
            return []
        if key in self._blocks:
            if self._open_key != key:
                self._drop("Block opened twice", key)
            return []

        events = self.start() + self._close_open()
        block = _Block(index=self._next_index, kind=kind)
        self._next_index += 1

        if kind == "text":
            content: Union[TextBlock, ToolUseBlock] = TextBlock(text="")
        else:
            block.tool_id = tool_id or generate_id("toolu")
            block.tool_name = tool_name
            content = ToolUseBlock(id=block.tool_id, name=tool_name, input={})

        self._blocks[key] = block
        self._open_key = key
        events.append(ContentBlockStartEvent(index=block.index, content_block=content))
        return events

    def text(self, text: str, key: Hashable | None = None) -> list[StreamEvent]:
        """Append text, to block ``key`` or to the current text block."""
        if not text or self.finished:
            return []

        events: list[StreamEvent] = []
        if key is None:
            if self.open_block_kind != "text":
                events += self.open_block(("text", self._next_index), "text")
            key = self._open_key
        elif key not in self._blocks:
            events += self.open_block(key, "text")

        block = self._blocks[key]
        if self._open_key != key or block.kind != "text":
            self._drop("Text for a block that is not an open text block", key)
            return events

        events.append(ContentBlockDeltaEvent(index=block.index, delta=BlockDelta(type="text_delta", text=text)))
        return events

    def tool_arguments(self, key: Hashable, fragment: str) -> list[StreamEvent]:
        if not fragment or self.finished:
            return []
        block = self._blocks.get(key)
        if block is None or block.kind != "tool_use":
            self._drop("Arguments for an unknown tool call", key)
            return []
        if self._open_key != key:
            self._drop("Arguments for a tool call that is already closed", key)
            return []

        block.arguments.append(fragment)
        return [
            ContentBlockDeltaEvent(
                index=block.index,
                delta=BlockDelta(type="input_json_delta", partial_json=fragment),
            )
        ]

    def arguments_seen(self, key: Hashable) -> bool:
        block = self._blocks.get(key)
        return bool(block and block.arguments)

    def close(self, key: Hashable) -> list[StreamEvent]:
        if self._open_key is not None and self._open_key == key:
            return self._close_open()
        return []

    def close_all(self) -> list[StreamEvent]:
        return self._close_open()

    def message_delta(
        self,
        stop_reason: StopReason | None = None,
        usage: UsageInfo | None = None,
        stop_sequence: str | None = None,
    ) -> list[StreamEvent]:
        if self.finished:
            return []
        events = self.start() + self._close_open()
        if usage is not None:
            self.usage = self.usage.updated_with(usage)
        self.stop_reason = stop_reason or self.stop_reason or self._default_stop_reason()
        self.stop_sequence = stop_sequence or self.stop_sequence
        self._delta_sent = True
        events.append(
            MessageDeltaEvent(
                stop_reason=self.stop_reason,
                stop_sequence=self.stop_sequence,
                usage=UsageInfo(**vars(self.usage)),
            )
        )
        return events

    def stop(
        self,
        stop_reason: StopReason | None = None,
        usage: UsageInfo | None = None,
        stop_sequence: str | None = None,
    ) -> list[StreamEvent]:
        """Emit ``message_delta`` (unless already sent) and ``message_stop``."""
        if self.finished:
            return []
        events: list[StreamEvent] = []
        if not self._delta_sent:
            events += self.message_delta(stop_reason, usage, stop_sequence)
        else:
            events += self.start() + self._close_open()
        self.finished = True
        events.append(MessageStopEvent())
        return events

    def error(self, error_type: str, message: str) -> list[StreamEvent]:
        if self.finished:
            return []
        self.finished = True
        self._open_key = None
        logger.warning("Provider reported a stream error", provider=self.provider, error_type=error_type, message=message)
        return [ErrorEvent(error_type=error_type or "api_error", message=message)]

    def finish(self) -> list[StreamEvent]:
        """Terminate a stream whose wire protocol ended without a terminal event."""
        if self.finished:
            return []
        logger.warning("Stream ended without a terminal event", provider=self.provider, model=self.model)
        return self.stop()

    def _default_stop_reason(self) -> StopReason:
        return StopReason.TOOL_USE if self.has_tool_calls else StopReason.END_TURN

    def _close_open(self) -> list[StreamEvent]:
        if self._open_key is None:
            return []
        block = self._blocks[self._open_key]
        self._open_key = None
        if block.kind == "tool_use":
            self.completed_tool_calls.append(
                ToolUseBlock(
                    id=block.tool_id,
                    name=block.tool_name,
                    input=parse_tool_arguments("".join(block.arguments)),
                )
            )
        return [ContentBlockStopEvent(index=block.index)]

    def _drop(self, reason: str, key: Hashable) -> None:
        logger.warning("Dropping out-of-order stream fragment", provider=self.provider, reason=reason, key=repr(key))
