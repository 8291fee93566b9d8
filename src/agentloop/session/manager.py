"""
Session manager: creates, resumes, forks and tracks sessions.
"""

import copy
import dataclasses

import structlog

from ..errors import SessionError, SessionNotFoundError
from ..events import EventRegistry
from ..llm.base import BaseProvider
from ..llm.resolver import ProviderResolver
from ..tools.registry import ToolRegistry
from .base import SessionConfig, SessionState
from .engine import Session
from .storage import MemorySessionStorage, SessionStorage

logger = structlog.get_logger()


class SessionManager:
    """Owns the live sessions of one process.

    The provider for a new session is, in order: the one passed to
    ``create()``, the manager's own ``provider``, or whatever the
    ``resolver`` picks for the session's model.
    """

    def __init__(
        self,
        provider: BaseProvider | None = None,
        resolver: ProviderResolver | None = None,
        storage: SessionStorage | None = None,
        default_config: SessionConfig | None = None,
        events: EventRegistry | None = None,
        tool_registry: ToolRegistry | None = None,
    ):
        self.provider = provider
        self.resolver = resolver
        self.storage = storage or MemorySessionStorage()
        self.default_config = default_config or SessionConfig()
        self.events = events
        self.tool_registry = tool_registry
        self._sessions: dict[str, Session] = {}

    def _provider_for(self, config: SessionConfig, provider: BaseProvider | None) -> BaseProvider:
        if provider is not None:
            return provider
        if self.provider is not None:
            return self.provider
        if self.resolver is not None:
            return self.resolver.require_provider(config.model_config.model)
        raise SessionError("SessionManager has no provider or resolver to serve the session")

    def _open(self, config: SessionConfig, state: SessionState, provider: BaseProvider | None) -> Session:
        session = Session(
            config,
            self._provider_for(config, provider),
            state=state,
            tool_registry=self.tool_registry,
            storage=self.storage,
            events=self.events,
        )
        self._sessions[session.id] = session
        return session

    async def create(
        self,
        config: SessionConfig | None = None,
        *,
        provider: BaseProvider | None = None,
        resume: str | None = None,
        fork: str | None = None,
    ) -> Session:
        """Start a new session, or resume/fork a stored one."""
        if resume is not None and fork is not None:
            raise SessionError("Pass either resume or fork, not both")
        if resume is not None:
            return await self.resume(resume, config, provider=provider)
        if fork is not None:
            return await self.fork(fork, config, provider=provider)

        config = config or self.default_config
        session = self._open(config, SessionState(metadata=dict(config.metadata)), provider)
        await self.storage.save(session.state)
        logger.info("Session created", session_id=session.id, model=config.model_config.model)
        return session

    async def resume(
        self,
        session_id: str,
        config: SessionConfig | None = None,
        *,
        provider: BaseProvider | None = None,
    ) -> Session:
        """Reopen a stored session with its full history."""
        live = self._sessions.get(session_id)
        if live is not None and not live.closed:
            return live

        state = await self.storage.load(session_id)
        if state is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        session = self._open(config or self.default_config, state, provider)
        logger.info("Session resumed", session_id=session_id, messages=len(state.messages))
        return session

    async def fork(
        self,
        session_id: str,
        config: SessionConfig | None = None,
        *,
        provider: BaseProvider | None = None,
    ) -> Session:
        """Start a new session whose history is a copy of another's."""
        live = self._sessions.get(session_id)
        source = live.state if live is not None else await self.storage.load(session_id)
        if source is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")

        state = SessionState(
            messages=copy.deepcopy(source.messages),
            usage=dataclasses.replace(source.usage),
            metadata=copy.deepcopy(source.metadata),
            parent_id=source.id,
        )
        session = self._open(config or self.default_config, state, provider)
        await self.storage.save(session.state)
        logger.info("Session forked", session_id=session.id, parent_id=source.id)
        return session

    def _prune(self) -> None:
        """Forget sessions that were closed directly rather than through the manager."""
        for session_id in [sid for sid, session in self._sessions.items() if session.closed]:
            del self._sessions[session_id]
            logger.debug("Dropped closed session", session_id=session_id)

    def get(self, session_id: str) -> Session | None:
        self._prune()
        return self._sessions.get(session_id)

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await self.storage.save(session.state)
        await session.close()

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)

    async def delete(self, session_id: str) -> None:
        """Close a session and remove it from storage."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()
        await self.storage.delete(session_id)

    def list(self) -> list[str]:
        """Ids of the sessions currently open in this manager."""
        self._prune()
        return list(self._sessions)
