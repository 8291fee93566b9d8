"""
Hooks module: user callbacks around tool use, prompts, stops and compaction.
"""

from .base import (
    HookCallback,
    HookContext,
    HookEvent,
    HookInput,
    HookMatcher,
    HookOutput,
    HookResult,
    HooksConfig,
    HookSpecificOutput,
    PermissionDecision,
    PreToolUseResult,
)
from .manager import HooksManager

__all__ = [
    "HookCallback",
    "HookContext",
    "HookEvent",
    "HookInput",
    "HookMatcher",
    "HookOutput",
    "HookResult",
    "HooksConfig",
    "HookSpecificOutput",
    "PermissionDecision",
    "PreToolUseResult",
    "HooksManager",
]
