"""
Tests for cancellation module.
"""

import asyncio

import pytest

from agentloop.cancellation import AbortSignal
from agentloop.errors import AbortError


def test_abort_is_one_shot():
    """Test that the first reason wins and callbacks run once."""
    signal = AbortSignal()
    reasons = []
    signal.add_callback(reasons.append)

    signal.abort("first")
    signal.abort("second")

    assert signal.aborted
    assert signal.reason == "first"
    assert reasons == ["first"]


def test_callback_after_abort_runs_immediately():
    """Test registering a callback on a fired signal."""
    signal = AbortSignal()
    signal.abort("done")
    reasons = []

    signal.add_callback(reasons.append)

    assert reasons == ["done"]
    with pytest.raises(AbortError):
        signal.raise_if_aborted()


def test_linked_signal_follows_parents():
    """Test that a linked signal fires with any parent and can be detached."""
    user, session = AbortSignal(), AbortSignal()
    child = AbortSignal.linked(user, None, session)

    session.abort("closed")

    assert child.aborted
    assert child.reason == "closed"

    other = AbortSignal.linked(user)
    other.detach(user)
    user.abort("late")
    assert not other.aborted


@pytest.mark.asyncio
async def test_race_returns_result():
    """Test that work finishing first wins the race."""
    signal = AbortSignal()

    assert await signal.race(asyncio.sleep(0, result=42)) == 42


@pytest.mark.asyncio
async def test_race_cancels_work_on_abort():
    """Test that aborting cancels the pending work."""
    signal = AbortSignal()
    started = asyncio.Event()
    cancelled = []

    async def work():
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def fire():
        await started.wait()
        signal.abort("stop")

    firing = asyncio.create_task(fire())
    with pytest.raises(AbortError) as exc_info:
        await signal.race(work())
    await firing

    assert exc_info.value.reason == "stop"
    assert cancelled == [True]


@pytest.mark.asyncio
async def test_race_on_aborted_signal():
    """Test that racing an already aborted signal raises at once."""
    signal = AbortSignal()
    signal.abort()

    with pytest.raises(AbortError):
        await signal.race(asyncio.sleep(30))
