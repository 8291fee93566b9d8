"""
Cooperative cancellation.

An AbortSignal is created per unit of work and threaded through provider
requests, tool contexts and hook contexts. Awaiting work through
``signal.race()`` makes it stop as soon as the signal fires.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from .errors import AbortError

logger = structlog.get_logger()

T = TypeVar("T")


class AbortSignal:
    """A one-shot cancellation flag that can be awaited."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str | None], Any]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        """Fire the signal. Later calls are ignored."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception as e:
                logger.warning("Abort callback failed", error=str(e))
        self._callbacks.clear()

    def add_callback(self, callback: Callable[[str | None], Any]) -> None:
        """Run ``callback(reason)`` when the signal fires (immediately if it already has)."""
        if self.aborted:
            callback(self._reason)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[str | None], Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> str | None:
        """Block until the signal fires and return its reason."""
        await self._event.wait()
        return self._reason

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise AbortError(self._reason)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first.

        When the signal wins, the pending work is cancelled and AbortError
        is raised.
        """
        task = asyncio.ensure_future(awaitable)
        if self.aborted:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise AbortError(self._reason)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AbortError(self._reason)

    @classmethod
    def linked(cls, *parents: "AbortSignal | None") -> "AbortSignal":
        """Create a signal that fires when any of ``parents`` fires."""
        child = cls()
        for parent in parents:
            if parent is not None:
                parent.add_callback(child.abort)
        return child

    def detach(self, *parents: "AbortSignal | None") -> None:
        """Stop following ``parents`` that were passed to ``linked``."""
        for parent in parents:
            if parent is not None:
                parent.remove_callback(self.abort)

    def __repr__(self) -> str:
        return f"AbortSignal(aborted={self.aborted}, reason={self._reason!r})"
