"""
Session module: the conversation loop, its state, storage and compaction.
"""

from .base import (
    MessageEvent,
    PermissionCallback,
    SessionConfig,
    SessionErrorEvent,
    SessionEvent,
    SessionPhase,
    SessionState,
    StopEvent,
    TextEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from .compaction import CompactionConfig, CompactionResult, SessionCompactor
from .engine import Session
from .manager import SessionManager
from .storage import MemorySessionStorage, SessionStorage

__all__ = [
    "MessageEvent",
    "PermissionCallback",
    "SessionConfig",
    "SessionErrorEvent",
    "SessionEvent",
    "SessionPhase",
    "SessionState",
    "StopEvent",
    "TextEvent",
    "ToolResultEvent",
    "ToolUseEvent",
    "CompactionConfig",
    "CompactionResult",
    "SessionCompactor",
    "Session",
    "SessionManager",
    "MemorySessionStorage",
    "SessionStorage",
]
