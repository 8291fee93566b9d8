"""
Session engine: drives one conversation through model calls and tool use.

``send()`` queues a user message; ``receive()`` is an async generator that
streams the model's answer, runs any requested tools (through the hooks
pipeline), feeds their results back and re-queries the model until it stops
asking for tools.
"""

from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Union

import structlog

from ..cancellation import AbortSignal
from ..errors import (
    AbortError,
    ProviderError,
    SessionBusyError,
    SessionClosedError,
    SessionStateError,
    ToolExecutionError,
)
from ..events import EventRegistry
from ..hooks.base import HookEvent, HookResult, PermissionDecision
from ..hooks.manager import HooksManager
from ..llm.base import (
    BaseProvider,
    ContentBlock,
    LLMRequest,
    Message,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UsageInfo,
)
from ..llm.events import (
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    ErrorEvent,
    MessageDeltaEvent,
    MessageStartEvent,
    StreamEvent,
    parse_tool_arguments,
)
from ..tools.base import ToolContext, truncate_output
from ..tools.registry import ToolRegistry
from .base import (
    MessageEvent,
    SessionConfig,
    SessionErrorEvent,
    SessionEvent,
    SessionPhase,
    SessionState,
    StopEvent,
    TextEvent,
    ToolResultEvent,
    ToolUseEvent,
    utcnow,
)
from .compaction import SessionCompactor
from .storage import SessionStorage

logger = structlog.get_logger()


class _TurnAssembler:
    """Rebuilds the assistant message from one canonical event stream."""

    def __init__(self):
        self.order: list[int] = []
        self.text: dict[int, list[str]] = {}
        self.tools: dict[int, ToolUseBlock] = {}
        self.arguments: dict[int, list[str]] = {}
        self.open: set[int] = set()
        self.usage = UsageInfo()
        self.stop_reason: StopReason | None = None
        self.error: ErrorEvent | None = None

    def handle(self, event: StreamEvent) -> list[SessionEvent]:
        if isinstance(event, MessageStartEvent):
            self.usage = self.usage.updated_with(event.usage)
        elif isinstance(event, ContentBlockStartEvent):
            block = event.content_block
            if isinstance(block, ToolUseBlock):
                self.tools[event.index] = ToolUseBlock(id=block.id, name=block.name)
                self.arguments[event.index] = []
            else:
                self.text[event.index] = [block.text] if block.text else []
            self.order.append(event.index)
            self.open.add(event.index)
        elif isinstance(event, ContentBlockDeltaEvent):
            if event.delta.type == "text_delta" and event.index in self.text:
                self.text[event.index].append(event.delta.text)
                return [TextEvent(text=event.delta.text)]
            if event.delta.type == "input_json_delta" and event.index in self.arguments:
                self.arguments[event.index].append(event.delta.partial_json)
        elif isinstance(event, ContentBlockStopEvent):
            return self._close(event.index)
        elif isinstance(event, MessageDeltaEvent):
            if event.stop_reason is not None:
                self.stop_reason = event.stop_reason
            self.usage = self.usage.updated_with(event.usage)
        elif isinstance(event, ErrorEvent):
            self.error = event
        return []

    def _close(self, index: int) -> list[SessionEvent]:
        if index not in self.open:
            return []
        self.open.discard(index)
        tool = self.tools.get(index)
        if tool is None:
            return []
        tool.input = parse_tool_arguments("".join(self.arguments[index]))
        return [ToolUseEvent(tool_use=tool)]

    def flush(self) -> list[SessionEvent]:
        """Close blocks the stream never terminated."""
        events: list[SessionEvent] = []
        for index in [i for i in self.order if i in self.open]:
            events += self._close(index)
        return events

    def content(self, text_only: bool = False) -> list[ContentBlock]:
        blocks: list[ContentBlock] = []
        for index in self.order:
            if index in self.tools:
                if not text_only and index not in self.open:
                    blocks.append(self.tools[index])
            else:
                text = "".join(self.text[index])
                if text:
                    blocks.append(TextBlock(text=text))
        return blocks


@dataclass
class _ToolOutcome:
    block: ToolResultBlock
    additional_context: str | None = None
    system_messages: list[str] = field(default_factory=list)
    halt: HookResult | None = None


class Session:
    """A conversation with one provider, its tools and its hooks."""

    def __init__(
        self,
        config: SessionConfig,
        provider: BaseProvider,
        *,
        state: SessionState | None = None,
        tool_registry: ToolRegistry | None = None,
        storage: SessionStorage | None = None,
        events: EventRegistry | None = None,
    ):
        self.config = config
        self.provider = provider
        self._state = state or SessionState(metadata=dict(config.metadata))
        registry = ToolRegistry(tool_registry.get_definitions() if tool_registry is not None else [])
        for tool in config.tools:
            registry.register(tool)
        self.tools = registry.filter(config.allowed_tools)
        self.hooks = HooksManager(config.hooks, session_id=self._state.id, cwd=config.cwd)
        self.compactor = SessionCompactor(config.compaction) if config.compaction is not None else None
        self.storage = storage
        self.events = events
        self.phase = SessionPhase.IDLE

        self._receiving = False
        self._pending: Message | None = None
        self._close_signal = AbortSignal()
        self._current_signal: AbortSignal | None = None
        self._log = logger.bind(session_id=self._state.id)

    @property
    def id(self) -> str:
        return self._state.id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self.phase == SessionPhase.CLOSED

    @property
    def receiving(self) -> bool:
        return self._receiving

    def get_messages(self) -> list[Message]:
        return list(self._state.messages)

    def get_usage(self) -> UsageInfo:
        return UsageInfo(**vars(self._state.usage))

    async def send(self, message: Union[str, Message]) -> None:
        """Append a user message to be answered by the next ``receive()``."""
        self._ensure_open()
        if self._receiving:
            raise SessionBusyError("Cannot send while a response is being received")
        if isinstance(message, str):
            message = Message(role="user", content=message)
        if message.role != "user":
            raise SessionStateError("Only user messages can be sent")

        self.phase = SessionPhase.SENDING
        self._state.messages.append(message)
        self._pending = message
        self._touch()

    async def receive(
        self,
        abort_signal: AbortSignal | None = None,
        continue_: bool = False,
    ) -> AsyncIterator[SessionEvent]:
        """Stream the answer to the pending message.

        Yields ``text`` deltas, ``tool_use`` and ``tool_result`` events,
        a ``message`` event per assistant message, and ends with ``stop``
        or ``error``. Pass ``continue_=True`` to answer the existing history
        without a new user message.
        """
        self._ensure_open()
        if self._receiving:
            raise SessionBusyError("A receive is already in progress")
        if self._pending is None and not continue_:
            raise SessionStateError("Nothing to respond to; call send() first or pass continue_=True")

        self._receiving = True
        signal = AbortSignal.linked(abort_signal, self._close_signal)
        self._current_signal = signal
        pending, self._pending = self._pending, None

        try:
            async with aclosing(self._run(pending, signal)) as events:
                async for event in events:
                    if self.events is not None:
                        await self.events.emit(event)
                    yield event
        finally:
            signal.detach(abort_signal, self._close_signal)
            self._current_signal = None
            self._receiving = False
            if self.phase != SessionPhase.CLOSED:
                self.phase = SessionPhase.IDLE
            self._touch()
            if self.storage is not None:
                await self.storage.save(self._state)

    async def query(self, message: Union[str, Message], abort_signal: AbortSignal | None = None) -> AsyncIterator[SessionEvent]:
        """``send()`` followed by ``receive()``."""
        await self.send(message)
        async for event in self.receive(abort_signal):
            yield event

    def abort(self, reason: str | None = None) -> None:
        """Cancel the receive in progress, if any."""
        if self._current_signal is not None:
            self._current_signal.abort(reason or "aborted")

    def reset(self) -> None:
        """Clear history and usage."""
        self._ensure_open()
        if self._receiving:
            raise SessionBusyError("Cannot reset while a response is being received")
        self._state.messages = []
        self._state.usage = UsageInfo()
        self._pending = None
        self.phase = SessionPhase.IDLE
        self._touch()

    async def close(self) -> None:
        if self.closed:
            return
        self._close_signal.abort("session closed")
        self._pending = None
        self.phase = SessionPhase.CLOSED
        self._log.info("Session closed")

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Turn loop

    async def _run(self, pending: Message | None, signal: AbortSignal) -> AsyncIterator[SessionEvent]:
        turn_usage = UsageInfo()
        try:
            if pending is not None and pending.text and self.hooks.has_hooks(HookEvent.USER_PROMPT_SUBMIT):
                submitted = await self.hooks.run_user_prompt_submit(pending.text, signal)
                self._append_system(submitted.system_message, submitted.additional_context)
                if not submitted.continue_:
                    yield StopEvent(stop_reason="hook_stopped", usage=turn_usage, reason=submitted.stop_reason)
                    return

            while True:
                if self._max_turns_reached():
                    yield StopEvent(
                        stop_reason="max_turns",
                        usage=turn_usage,
                        reason=f"Reached max_turns ({self.config.max_turns})",
                    )
                    return

                await self._maybe_compact(signal)

                self.phase = SessionPhase.STREAMING
                assembler = _TurnAssembler()
                try:
                    stream = await self.provider.stream(self._build_request(signal))
                    async with stream:
                        async for stream_event in stream:
                            for event in assembler.handle(stream_event):
                                yield event
                except AbortError:
                    partial = assembler.content(text_only=True)
                    if partial:
                        self._state.messages.append(Message(role="assistant", content=partial, usage=assembler.usage))
                    raise
                finally:
                    turn_usage = turn_usage + assembler.usage
                    self._state.usage = self._state.usage + assembler.usage

                for event in assembler.flush():
                    yield event

                if assembler.error is not None:
                    error = assembler.error
                    yield SessionErrorEvent(
                        error=ProviderError(
                            f"{self.provider.id} stream error ({error.error_type}): {error.message}",
                            details={"error_type": error.error_type},
                        )
                    )
                    return

                assistant = Message(
                    role="assistant",
                    content=assembler.content(),
                    stop_reason=assembler.stop_reason,
                    usage=assembler.usage,
                )
                self._state.messages.append(assistant)
                self._touch()
                yield MessageEvent(message=assistant)

                tool_uses = assistant.tool_uses
                if not tool_uses:
                    await self._run_stop_hooks(signal)
                    yield StopEvent(stop_reason=assembler.stop_reason or StopReason.END_TURN, usage=turn_usage)
                    return

                self.phase = SessionPhase.TOOL_EXECUTING
                halt: HookResult | None = None
                async with aclosing(self._execute_tools(tool_uses, signal)) as tool_events:
                    async for event in tool_events:
                        if isinstance(event, HookResult):
                            halt = event
                        else:
                            yield event

                if halt is not None:
                    yield StopEvent(stop_reason="hook_stopped", usage=turn_usage, reason=halt.stop_reason)
                    return

                signal.raise_if_aborted()

        except AbortError as e:
            self._log.info("Receive aborted", reason=e.reason)
            yield StopEvent(stop_reason="aborted", usage=turn_usage, reason=e.reason)
        except Exception as e:
            self._log.error("Receive failed", error=str(e), error_type=type(e).__name__)
            yield SessionErrorEvent(error=e)

    async def _execute_tools(
        self,
        tool_uses: list[ToolUseBlock],
        signal: AbortSignal,
    ) -> AsyncIterator[Union[ToolResultEvent, HookResult]]:
        """Run tool calls in order and append one user message with all results.

        Yields a HookResult last if a hook halted the turn. Every tool_use
        ends up with exactly one tool_result, also when a hook halts or the
        turn is aborted part way.
        """
        results: list[ToolResultBlock] = []
        contexts: list[str] = []
        system_messages: list[str] = []
        halt: HookResult | None = None

        try:
            for tool_use in tool_uses:
                if halt is not None:
                    block = ToolResultBlock(
                        tool_use_id=tool_use.id,
                        content=f"Tool execution skipped: {halt.stop_reason or 'stopped by hook'}",
                        is_error=True,
                    )
                else:
                    outcome = await self._execute_tool_call(tool_use, signal)
                    block = outcome.block
                    system_messages += outcome.system_messages
                    if outcome.additional_context:
                        contexts.append(outcome.additional_context)
                    halt = outcome.halt
                results.append(block)
                yield ToolResultEvent(tool_use=tool_use, result=block)
        finally:
            answered = {r.tool_use_id for r in results}
            for tool_use in tool_uses:
                if tool_use.id not in answered:
                    results.append(ToolResultBlock(tool_use_id=tool_use.id, content="Tool execution aborted", is_error=True))

            content: list[ContentBlock] = list(results)
            content += [TextBlock(text=c) for c in contexts]
            self._state.messages.append(Message(role="user", content=content))
            for text in system_messages:
                self._state.messages.append(Message(role="system", content=text))
            self._touch()

        if halt is not None:
            yield halt

    async def _execute_tool_call(self, tool_use: ToolUseBlock, signal: AbortSignal) -> _ToolOutcome:
        log = self._log.bind(tool_name=tool_use.name, tool_use_id=tool_use.id)
        tool_input = tool_use.input
        system_messages: list[str] = []

        decision = await self.hooks.run_pre_tool_use(tool_use.name, tool_input, tool_use.id, signal)
        if decision.system_message:
            system_messages.append(decision.system_message)

        if not decision.continue_:
            log.info("Tool call halted by hook", reason=decision.stop_reason)
            return _ToolOutcome(
                block=self._error_result(tool_use, f"Tool execution stopped: {decision.stop_reason or 'stopped by hook'}"),
                system_messages=system_messages,
                halt=decision,
            )

        if decision.decision == PermissionDecision.ASK:
            if not await self._ask_permission(tool_use.name, tool_input):
                log.info("Tool call not approved", reason=decision.reason)
                return _ToolOutcome(
                    block=self._error_result(tool_use, f"Permission denied: {decision.reason or 'tool use was not approved'}"),
                    system_messages=system_messages,
                )
        elif decision.decision == PermissionDecision.DENY:
            log.info("Tool call denied by hook", reason=decision.reason)
            return _ToolOutcome(
                block=self._error_result(tool_use, f"Permission denied: {decision.reason or 'blocked by hook'}"),
                system_messages=system_messages,
            )

        if decision.updated_input is not None:
            tool_input = decision.updated_input

        context = ToolContext(
            session_id=self.id,
            abort_signal=signal,
            cwd=self.config.cwd,
            events=self.events,
        )
        try:
            output = await self.tools.execute(tool_use.name, tool_input, context)
            content, is_error = output.content, output.is_error
        except ToolExecutionError as e:
            content, is_error = f"Error: {e.message}", True

        if isinstance(content, str):
            content, truncated = truncate_output(content)
            if truncated:
                log.info("Tool output truncated")

        block = ToolResultBlock(tool_use_id=tool_use.id, content=content, is_error=is_error)

        post = await self.hooks.run_post_tool_use(tool_use.name, tool_input, block.text, tool_use.id, signal)
        if post.system_message:
            system_messages.append(post.system_message)

        return _ToolOutcome(
            block=block,
            additional_context=post.additional_context,
            system_messages=system_messages,
            halt=post if not post.continue_ else None,
        )

    async def _ask_permission(self, tool_name: str, tool_input: dict[str, Any]) -> bool:
        callback = self.config.permission_callback
        if callback is None:
            return False
        try:
            return bool(await callback(tool_name, tool_input))
        except AbortError:
            raise
        except Exception as e:
            self._log.warning("Permission callback failed", tool_name=tool_name, error=str(e))
            return False

    async def _run_stop_hooks(self, signal: AbortSignal) -> None:
        if not self.hooks.has_hooks(HookEvent.STOP):
            return
        result = await self.hooks.run_stop(signal)
        self._append_system(result.system_message)

    async def _maybe_compact(self, signal: AbortSignal) -> None:
        if self.compactor is None or not self.compactor.needs_compaction(self._state.messages):
            return
        if self.hooks.has_hooks(HookEvent.PRE_COMPACT):
            result = await self.hooks.run_pre_compact("auto", signal)
            if not result.continue_:
                self._log.info("Compaction skipped by hook", reason=result.stop_reason)
                return

        result = await self.compactor.compact(
            self._state.messages,
            provider=self.provider,
            model_config=self.config.model_config,
        )
        if result.compacted:
            self._state.messages = result.messages
            self._touch()

    # Helpers

    def _build_request(self, signal: AbortSignal) -> LLMRequest:
        return LLMRequest(
            messages=list(self._state.messages),
            config=self.config.model_config,
            tools=self.tools.get_definitions(),
            system_prompt=self.config.system_prompt,
            abort_signal=signal,
        )

    def _max_turns_reached(self) -> bool:
        if self.config.max_turns is None:
            return False
        turns = sum(1 for m in self._state.messages if m.role == "assistant")
        return turns >= self.config.max_turns

    def _append_system(self, *texts: str | None) -> None:
        for text in texts:
            if text:
                self._state.messages.append(Message(role="system", content=text))

    @staticmethod
    def _error_result(tool_use: ToolUseBlock, message: str) -> ToolResultBlock:
        return ToolResultBlock(tool_use_id=tool_use.id, content=message, is_error=True)

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Session {self.id} is closed")

    def _touch(self) -> None:
        self._state.updated_at = utcnow()
