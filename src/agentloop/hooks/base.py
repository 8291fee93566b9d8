"""
Hook types.

A hook is an async callable ``hook(input, tool_use_id, context)`` that may
return a HookOutput. Hooks are grouped under HookMatchers, which carry an
optional tool-name regex and a timeout, and are keyed by HookEvent.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from ..cancellation import AbortSignal

DEFAULT_HOOK_TIMEOUT = 60.0


class HookEvent(str, Enum):
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    PRE_COMPACT = "PreCompact"


TOOL_EVENTS = {HookEvent.PRE_TOOL_USE, HookEvent.POST_TOOL_USE}


class PermissionDecision(str, Enum):
    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


# deny > ask > allow
DECISION_PRIORITY = {
    PermissionDecision.ALLOW: 0,
    PermissionDecision.ASK: 1,
    PermissionDecision.DENY: 2,
}


@dataclass
class HookInput:
    """What a hook is told about the event it is handling."""

    hook_event_name: HookEvent
    session_id: str
    cwd: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_response: Any = None
    prompt: str | None = None
    trigger: str | None = None
    stop_hook_active: bool = False


@dataclass
class HookContext:
    signal: AbortSignal


@dataclass
class HookSpecificOutput:
    permission_decision: PermissionDecision | None = None
    permission_decision_reason: str | None = None
    updated_input: dict[str, Any] | None = None
    additional_context: str | None = None


@dataclass
class HookOutput:
    """What a hook may return. ``continue_=False`` halts the session turn."""

    continue_: bool = True
    stop_reason: str | None = None
    system_message: str | None = None
    suppress_output: bool = False
    hook_specific_output: HookSpecificOutput | None = None


HookCallback = Callable[[HookInput, Union[str, None], HookContext], Awaitable[Union[HookOutput, None]]]


@dataclass
class HookMatcher:
    hooks: list[HookCallback]
    matcher: str | None = None
    timeout: float = DEFAULT_HOOK_TIMEOUT


HooksConfig = dict[Union[HookEvent, str], list[HookMatcher]]


@dataclass
class HookResult:
    """Merged outcome of every hook that ran for one event."""

    continue_: bool = True
    stop_reason: str | None = None
    system_message: str | None = None
    additional_context: str | None = None
    outputs: list[HookOutput] = field(default_factory=list)


@dataclass
class PreToolUseResult(HookResult):
    decision: PermissionDecision = PermissionDecision.ALLOW
    reason: str | None = None
    updated_input: dict[str, Any] | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == PermissionDecision.ALLOW
