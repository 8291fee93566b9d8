"""
Tests for the session manager.
"""

import pytest

from agentloop.errors import ProviderNotFoundError, SessionError, SessionNotFoundError
from agentloop.llm.resolver import ProviderResolver
from agentloop.session import MemorySessionStorage, SessionConfig, SessionManager

from scripted import ScriptedProvider, text_turn


async def _answer(session, prompt="Hi"):
    await session.send(prompt)
    return [event async for event in session.receive()]


@pytest.mark.asyncio
async def test_create_saves_session():
    """Test that a new session is tracked and stored."""
    storage = MemorySessionStorage()
    manager = SessionManager(provider=ScriptedProvider(), storage=storage)

    session = await manager.create(SessionConfig(model="test-model", metadata={"user": "alice"}))

    assert manager.get(session.id) is session
    assert manager.list() == [session.id]
    assert await storage.list() == [session.id]
    assert session.state.metadata == {"user": "alice"}


@pytest.mark.asyncio
async def test_create_uses_resolver():
    """Test that the resolver picks the provider by model."""
    scripted = ScriptedProvider()
    resolver = ProviderResolver()
    resolver.register(scripted)
    manager = SessionManager(resolver=resolver)

    session = await manager.create(SessionConfig(model="test-model"))

    assert session.provider is scripted
    with pytest.raises(ProviderNotFoundError):
        await manager.create(SessionConfig(model="gpt-4o"))


@pytest.mark.asyncio
async def test_create_without_provider_fails():
    """Test that a manager with no way to find a provider refuses to create."""
    with pytest.raises(SessionError):
        await SessionManager().create(SessionConfig(model="test-model"))


@pytest.mark.asyncio
async def test_resume_restores_history():
    """Test that a closed session can be resumed from storage."""
    manager = SessionManager(provider=ScriptedProvider([text_turn("Hello")]))
    config = SessionConfig(model="test-model")
    session = await manager.create(config)
    await _answer(session)
    await manager.close(session.id)

    assert manager.get(session.id) is None

    resumed = await manager.create(config, resume=session.id)

    assert resumed is not session
    assert resumed.id == session.id
    assert [m.role for m in resumed.get_messages()] == ["user", "assistant"]
    assert resumed.get_usage().output_tokens == 5


@pytest.mark.asyncio
async def test_resume_returns_live_session():
    """Test that resuming an open session returns the same object."""
    manager = SessionManager(provider=ScriptedProvider())
    session = await manager.create(SessionConfig(model="test-model"))

    assert await manager.resume(session.id) is session


@pytest.mark.asyncio
async def test_resume_unknown_session():
    """Test that resuming a missing session raises."""
    manager = SessionManager(provider=ScriptedProvider())

    with pytest.raises(SessionNotFoundError):
        await manager.resume("sess_missing")


@pytest.mark.asyncio
async def test_fork_copies_history():
    """Test that a fork starts from a copy and diverges independently."""
    provider = ScriptedProvider([text_turn("First"), text_turn("Forked")])
    manager = SessionManager(provider=provider)
    config = SessionConfig(model="test-model")
    original = await manager.create(config)
    await _answer(original)

    forked = await manager.create(config, fork=original.id)

    assert forked.id != original.id
    assert forked.state.parent_id == original.id
    assert [m.text for m in forked.get_messages()] == ["Hi", "First"]

    await _answer(forked, "Go on")

    assert len(forked.get_messages()) == 4
    assert len(original.get_messages()) == 2


@pytest.mark.asyncio
async def test_resume_and_fork_are_exclusive():
    """Test that resume and fork cannot be combined."""
    manager = SessionManager(provider=ScriptedProvider())

    with pytest.raises(SessionError):
        await manager.create(resume="a", fork="b")


@pytest.mark.asyncio
async def test_close_all_and_delete():
    """Test closing every session and deleting stored state."""
    storage = MemorySessionStorage()
    manager = SessionManager(provider=ScriptedProvider(), storage=storage)
    first = await manager.create(SessionConfig(model="test-model"))
    second = await manager.create(SessionConfig(model="test-model"))

    await manager.close_all()

    assert first.closed and second.closed
    assert manager.list() == []
    assert storage.size() == 2

    await manager.delete(first.id)

    assert await storage.load(first.id) is None
    assert await storage.load(second.id) is not None


@pytest.mark.asyncio
async def test_session_closed_directly_is_forgotten():
    """Test that a session closed on its own is dropped from the manager."""
    manager = SessionManager(provider=ScriptedProvider([text_turn("Hello")]))
    session = await manager.create(SessionConfig(model="test-model"))
    other = await manager.create(SessionConfig(model="test-model"))
    await _answer(session)

    await session.close()

    assert manager.get(session.id) is None
    assert manager.list() == [other.id]

    resumed = await manager.resume(session.id)

    assert resumed is not session
    assert not resumed.closed
    assert [m.text for m in resumed.get_messages()] == ["Hi", "Hello"]
