"""
Tests for the session engine.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from agentloop.cancellation import AbortSignal
from agentloop.errors import ProviderHttpError, SessionBusyError, SessionClosedError, SessionStateError
from agentloop.events import EventRegistry
from agentloop.hooks import HookEvent, HookMatcher, HookOutput, HookSpecificOutput, PermissionDecision
from agentloop.llm.base import Message, StopReason, TextBlock, ToolResultBlock
from agentloop.session import (
    CompactionConfig,
    MemorySessionStorage,
    Session,
    SessionConfig,
    SessionPhase,
    SessionState,
)
from agentloop.tools import Tool, ToolParameter

from scripted import HANG, ScriptedProvider, error_turn, text_turn, tool_turn


def _echo_tool(calls=None) -> Tool:
    async def handler(input, context):
        if calls is not None:
            calls.append(input)
        return f"echo: {input.get('text', '')}"

    return Tool(
        name="echo",
        description="Echo the input text",
        parameters=[ToolParameter(name="text", param_type="string", description="Text to echo")],
        handler=handler,
    )


def _session(turns, **config) -> tuple[Session, ScriptedProvider]:
    provider = ScriptedProvider(turns)
    config.setdefault("model", "test-model")
    return Session(SessionConfig(**config), provider), provider


async def _run(session: Session, prompt="Hi", **kwargs) -> list:
    await session.send(prompt)
    return [event async for event in session.receive(**kwargs)]


def _types(events) -> list[str]:
    return [e.type for e in events]


@pytest.mark.asyncio
async def test_text_answer():
    """Test a plain answer: text delta, message, stop."""
    session, provider = _session([text_turn("Hello!")])

    events = await _run(session)

    assert _types(events) == ["text", "message", "stop"]
    assert events[0].text == "Hello!"
    assert events[-1].stop_reason == StopReason.END_TURN
    assert events[-1].usage.input_tokens == 10
    assert events[-1].usage.output_tokens == 5
    assert [m.role for m in session.get_messages()] == ["user", "assistant"]
    assert session.get_messages()[1].text == "Hello!"
    assert session.phase == SessionPhase.IDLE


@pytest.mark.asyncio
async def test_tool_loop_requeries_once():
    """Test that a tool call is executed and the model asked again."""
    calls = []
    session, provider = _session(
        [tool_turn(("toolu_1", "echo", {"text": "hi"})), text_turn("Done.")],
        tools=[_echo_tool(calls)],
    )

    events = await _run(session)

    assert _types(events) == ["tool_use", "message", "tool_result", "text", "message", "stop"]
    assert events[0].tool_use.input == {"text": "hi"}
    assert events[2].result == ToolResultBlock(tool_use_id="toolu_1", content="echo: hi", is_error=False)
    assert calls == [{"text": "hi"}]

    assert len(provider.requests) == 2
    second = provider.requests[1].messages
    assert [m.role for m in second] == ["user", "assistant", "user"]
    assert second[1].tool_uses[0].id == "toolu_1"
    assert second[2].tool_results[0].tool_use_id == "toolu_1"
    assert [t.name for t in provider.requests[0].tools] == ["echo"]

    assert events[-1].usage.input_tokens == 20
    assert session.get_usage().output_tokens == 10


@pytest.mark.asyncio
async def test_every_tool_use_gets_one_result():
    """Test that parallel tool calls are answered in one user message."""
    session, _ = _session(
        [tool_turn(("t1", "echo", {"text": "a"}), ("t2", "missing", {})), text_turn("ok")],
        tools=[_echo_tool()],
    )

    events = await _run(session)

    results = [e.result for e in events if e.type == "tool_result"]
    assert [r.tool_use_id for r in results] == ["t1", "t2"]
    assert not results[0].is_error
    assert results[1].is_error
    assert "Tool 'missing' not found" in results[1].text

    carrier = session.get_messages()[2]
    assert carrier.role == "user"
    assert [r.tool_use_id for r in carrier.tool_results] == ["t1", "t2"]


@pytest.mark.asyncio
async def test_tool_failure_becomes_error_result():
    """Test that a raising tool yields an error result and the loop goes on."""

    async def broken(input, context):
        raise RuntimeError("disk full")

    tool = Tool(name="write", description="Write", parameters=[], handler=broken)
    session, provider = _session([tool_turn(("t1", "write", {})), text_turn("Sorry.")], tools=[tool])

    events = await _run(session)

    result = next(e.result for e in events if e.type == "tool_result")
    assert result.is_error
    assert "disk full" in result.text
    assert events[-1].type == "stop"
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_pre_tool_use_deny():
    """Test that a denied tool is not executed."""
    calls = []

    async def deny(hook_input, tool_use_id, context):
        return HookOutput(hook_specific_output=HookSpecificOutput(
            permission_decision=PermissionDecision.DENY,
            permission_decision_reason="echo is disabled",
        ))

    session, _ = _session(
        [tool_turn(("t1", "echo", {"text": "x"})), text_turn("Understood.")],
        tools=[_echo_tool(calls)],
        hooks={HookEvent.PRE_TOOL_USE: [HookMatcher(hooks=[deny], matcher="echo")]},
    )

    events = await _run(session)

    result = next(e.result for e in events if e.type == "tool_result")
    assert result.is_error
    assert result.text == "Permission denied: echo is disabled"
    assert calls == []


@pytest.mark.asyncio
async def test_pre_tool_use_rewrites_input():
    """Test that an allow hook's updated input reaches the tool."""
    calls = []

    async def rewrite(hook_input, tool_use_id, context):
        return HookOutput(hook_specific_output=HookSpecificOutput(
            permission_decision=PermissionDecision.ALLOW,
            updated_input={"text": "rewritten"},
        ))

    session, _ = _session(
        [tool_turn(("t1", "echo", {"text": "original"})), text_turn("ok")],
        tools=[_echo_tool(calls)],
        hooks={HookEvent.PRE_TOOL_USE: [HookMatcher(hooks=[rewrite])]},
    )

    await _run(session)

    assert calls == [{"text": "rewritten"}]


@pytest.mark.asyncio
async def test_ask_uses_permission_callback():
    """Test that ask decisions go to the permission callback."""
    calls = []

    async def ask(hook_input, tool_use_id, context):
        return HookOutput(hook_specific_output=HookSpecificOutput(permission_decision=PermissionDecision.ASK))

    approve = AsyncMock(return_value=True)
    session, _ = _session(
        [tool_turn(("t1", "echo", {"text": "x"})), text_turn("ok")],
        tools=[_echo_tool(calls)],
        hooks={HookEvent.PRE_TOOL_USE: [HookMatcher(hooks=[ask])]},
        permission_callback=approve,
    )

    await _run(session)

    approve.assert_awaited_once_with("echo", {"text": "x"})
    assert calls == [{"text": "x"}]


@pytest.mark.asyncio
async def test_ask_without_callback_denies():
    """Test that ask without a permission callback is treated as deny."""
    calls = []

    async def ask(hook_input, tool_use_id, context):
        return HookOutput(hook_specific_output=HookSpecificOutput(permission_decision=PermissionDecision.ASK))

    session, _ = _session(
        [tool_turn(("t1", "echo", {"text": "x"})), text_turn("ok")],
        tools=[_echo_tool(calls)],
        hooks={HookEvent.PRE_TOOL_USE: [HookMatcher(hooks=[ask])]},
    )

    events = await _run(session)

    assert next(e.result for e in events if e.type == "tool_result").is_error
    assert calls == []


@pytest.mark.asyncio
async def test_post_tool_use_context_and_halt():
    """Test that a halting PostToolUse hook skips the remaining tools and stops."""
    calls = []

    async def halt(hook_input, tool_use_id, context):
        return HookOutput(
            continue_=False,
            stop_reason="enough",
            hook_specific_output=HookSpecificOutput(additional_context="Output looked fine."),
        )

    session, provider = _session(
        [tool_turn(("t1", "echo", {"text": "a"}), ("t2", "echo", {"text": "b"}))],
        tools=[_echo_tool(calls)],
        hooks={HookEvent.POST_TOOL_USE: [HookMatcher(hooks=[halt])]},
    )

    events = await _run(session)

    assert events[-1].type == "stop"
    assert events[-1].stop_reason == "hook_stopped"
    assert events[-1].reason == "enough"
    assert calls == [{"text": "a"}]
    assert len(provider.requests) == 1

    carrier = session.get_messages()[-1]
    results = carrier.tool_results
    assert [r.tool_use_id for r in results] == ["t1", "t2"]
    assert not results[0].is_error
    assert results[1].is_error and "skipped" in results[1].text
    assert TextBlock(text="Output looked fine.") in carrier.content


@pytest.mark.asyncio
async def test_user_prompt_submit_can_stop():
    """Test that a UserPromptSubmit hook can end the turn before the model is called."""

    async def block(hook_input, tool_use_id, context):
        assert hook_input.prompt == "secret"
        return HookOutput(continue_=False, stop_reason="blocked prompt")

    session, provider = _session([], hooks={"UserPromptSubmit": [HookMatcher(hooks=[block])]})

    events = await _run(session, "secret")

    assert _types(events) == ["stop"]
    assert events[0].stop_reason == "hook_stopped"
    assert provider.requests == []


@pytest.mark.asyncio
async def test_user_prompt_submit_adds_context():
    """Test that additional context is sent to the model as a system message."""

    async def enrich(hook_input, tool_use_id, context):
        return HookOutput(hook_specific_output=HookSpecificOutput(additional_context="Today is Monday."))

    session, provider = _session([text_turn("ok")], hooks={"UserPromptSubmit": [HookMatcher(hooks=[enrich])]})

    await _run(session)

    sent = provider.requests[0].messages
    assert sent[-1].role == "system"
    assert sent[-1].text == "Today is Monday."


@pytest.mark.asyncio
async def test_stop_hooks_run_on_normal_end():
    """Test that Stop hooks run when the model finishes."""
    stop_hook = AsyncMock(return_value=None)
    session, _ = _session([text_turn("bye")], hooks={HookEvent.STOP: [HookMatcher(hooks=[stop_hook])]})

    await _run(session)

    stop_hook.assert_awaited_once()


@pytest.mark.asyncio
async def test_abort_during_stream():
    """Test that aborting keeps partial text and usage and ends with stop(aborted)."""
    partial = text_turn("Partial")[:3] + [HANG]
    session, _ = _session([partial])
    signal = AbortSignal()

    await session.send("Tell me a story")
    events = []
    async for event in session.receive(abort_signal=signal):
        events.append(event)
        if event.type == "text":
            signal.abort("user cancelled")

    assert _types(events) == ["text", "stop"]
    assert events[-1].stop_reason == "aborted"
    assert events[-1].reason == "user cancelled"
    assert events[-1].usage.input_tokens == 10

    messages = session.get_messages()
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].text == "Partial"
    assert session.get_usage().input_tokens == 10
    assert not session.receiving


@pytest.mark.asyncio
async def test_abort_method_cancels_current_receive():
    """Test Session.abort() while the stream is waiting."""
    session, _ = _session([[HANG]])
    await session.send("Hi")

    async def consume():
        return [event async for event in session.receive()]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    session.abort("stop button")
    events = await asyncio.wait_for(task, timeout=5)

    assert _types(events) == ["stop"]
    assert events[0].stop_reason == "aborted"
    assert events[0].reason == "stop button"
    assert [m.role for m in session.get_messages()] == ["user"]


@pytest.mark.asyncio
async def test_abort_during_tool_execution():
    """Test that unanswered tool calls get an aborted result when a tool is cancelled."""

    async def wait_forever(input, context):
        await context.abort_signal.race(asyncio.Event().wait())
        return "unreachable"

    slow = Tool(name="wait", description="Wait until cancelled", parameters=[], handler=wait_forever)
    session, provider = _session(
        [tool_turn(("t1", "echo", {"text": "a"}), ("t2", "wait", {}), ("t3", "echo", {"text": "b"}))],
        tools=[_echo_tool(), slow],
    )
    signal = AbortSignal()

    await session.send("Do three things")
    events = []
    async for event in session.receive(abort_signal=signal):
        events.append(event)
        if event.type == "tool_result":
            asyncio.get_running_loop().call_later(0.01, signal.abort, "user cancelled")

    assert _types(events) == ["tool_use", "tool_use", "tool_use", "message", "tool_result", "stop"]
    assert events[-1].stop_reason == "aborted"
    assert events[-1].reason == "user cancelled"

    messages = session.get_messages()
    assert [m.role for m in messages] == ["user", "assistant", "user"]
    results = messages[2].tool_results
    assert [r.tool_use_id for r in results] == ["t1", "t2", "t3"]
    assert results[0].text == "echo: a" and not results[0].is_error
    assert [r.text for r in results[1:]] == ["Tool execution aborted", "Tool execution aborted"]
    assert all(r.is_error for r in results[1:])
    assert len(provider.requests) == 1
    assert not session.receiving


@pytest.mark.asyncio
async def test_provider_error_event():
    """Test that a vendor error yields an error event and no assistant message."""
    session, _ = _session([error_turn("Overloaded")])

    events = await _run(session)

    assert _types(events) == ["error"]
    assert "Overloaded" in events[0].message
    assert [m.role for m in session.get_messages()] == ["user"]


@pytest.mark.asyncio
async def test_provider_http_error():
    """Test that an HTTP failure becomes an error event."""
    session, _ = _session([ProviderHttpError("scripted", 401, '{"error": {"message": "bad key"}}')])

    events = await _run(session)

    assert _types(events) == ["error"]
    assert isinstance(events[0].error, ProviderHttpError)


@pytest.mark.asyncio
async def test_continue_after_error():
    """Test that receive(continue_=True) retries the existing history."""
    session, provider = _session([error_turn(), text_turn("Recovered")])

    await _run(session)
    events = [e async for e in session.receive(continue_=True)]

    assert events[-1].type == "stop"
    assert session.get_messages()[-1].text == "Recovered"
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_receive_without_send_raises():
    """Test that receive() needs a pending message."""
    session, _ = _session([])

    with pytest.raises(SessionStateError):
        await session.receive().__anext__()


@pytest.mark.asyncio
async def test_busy_session_rejects_send_and_receive():
    """Test that a session serves one receive at a time."""
    session, _ = _session([text_turn("Hello")])
    await session.send("Hi")

    receiving = session.receive()
    await receiving.__anext__()

    with pytest.raises(SessionBusyError):
        await session.send("again")
    with pytest.raises(SessionBusyError):
        await session.receive(continue_=True).__anext__()

    await receiving.aclose()
    assert not session.receiving


@pytest.mark.asyncio
async def test_closed_session_rejects_use():
    """Test that a closed session cannot be used."""
    session, _ = _session([])

    async with session:
        pass

    assert session.closed
    with pytest.raises(SessionClosedError):
        await session.send("Hi")


@pytest.mark.asyncio
async def test_max_turns():
    """Test that the loop stops after max_turns assistant messages."""
    session, provider = _session(
        [tool_turn(("t1", "echo", {"text": "a"})), text_turn("never")],
        tools=[_echo_tool()],
        max_turns=1,
    )

    events = await _run(session)

    assert events[-1].stop_reason == "max_turns"
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_allowed_tools_filter():
    """Test that only allowed tools are offered to the model."""

    async def noop(input, context):
        return "ok"

    secret = Tool(name="delete_everything", description="No", parameters=[], handler=noop)
    session, provider = _session([text_turn("ok")], tools=[_echo_tool(), secret], allowed_tools=["ech*"])

    await _run(session)

    assert [t.name for t in provider.requests[0].tools] == ["echo"]


@pytest.mark.asyncio
async def test_compaction_before_provider_call():
    """Test that an oversized history is compacted before it is sent."""
    history = [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"{i}:" + "x" * 100)
        for i in range(10)
    ]
    provider = ScriptedProvider([text_turn("short answer")])
    config = SessionConfig(
        model="test-model",
        compaction=CompactionConfig(
            max_context_tokens=100,
            compaction_threshold=0.5,
            keep_recent_turns=1,
            prune_tool_outputs=False,
        ),
    )
    session = Session(config, provider, state=SessionState(messages=list(history)))

    await _run(session, "new question")

    sent = provider.requests[0].messages
    assert sent[0] is history[0]
    assert sent[-1].text == "new question"
    assert len(sent) == 2


@pytest.mark.asyncio
async def test_events_and_storage():
    """Test that events reach the registry and state is saved after receive."""
    events = EventRegistry()
    seen_text = []
    everything = []
    events.on("text", lambda e: seen_text.append(e.text))
    events.on("*", everything.append)
    storage = MemorySessionStorage()

    session = Session(
        SessionConfig(model="test-model"),
        ScriptedProvider([text_turn("Hello")]),
        storage=storage,
        events=events,
    )
    await _run(session)

    assert seen_text == ["Hello"]
    assert [e.type for e in everything] == ["text", "message", "stop"]
    stored = await storage.load(session.id)
    assert [m.role for m in stored.messages] == ["user", "assistant"]
    assert stored.usage.output_tokens == 5


@pytest.mark.asyncio
async def test_reset_clears_history():
    """Test reset()."""
    session, _ = _session([text_turn("Hello")])
    await _run(session)

    session.reset()

    assert session.get_messages() == []
    assert session.get_usage().total_tokens == 0
