"""
Session persistence contract and an in-memory reference store.
"""

import copy
from abc import ABC, abstractmethod

import structlog

from .base import SessionState

logger = structlog.get_logger()


class SessionStorage(ABC):
    """Where session state lives between processes or restarts.

    Implementations must store and return independent copies: mutating a
    loaded state must not affect what is stored, and vice versa.
    """

    @abstractmethod
    async def save(self, state: SessionState) -> None:
        pass

    @abstractmethod
    async def load(self, session_id: str) -> SessionState | None:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def list(self) -> list[str]:
        """Ids of every stored session."""
        pass


class MemorySessionStorage(SessionStorage):
    """Keeps deep copies of session state in a dict."""

    def __init__(self):
        self._sessions: dict[str, SessionState] = {}

    async def save(self, state: SessionState) -> None:
        self._sessions[state.id] = copy.deepcopy(state)
        logger.debug("Session saved", session_id=state.id, messages=len(state.messages))

    async def load(self, session_id: str) -> SessionState | None:
        state = self._sessions.get(session_id)
        return copy.deepcopy(state) if state is not None else None

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def list(self) -> list[str]:
        return list(self._sessions.keys())

    def clear(self) -> None:
        self._sessions.clear()

    def size(self) -> int:
        return len(self._sessions)
