"""
Explicit callback registry for side-channel notifications.

Sessions and tools publish events here instead of through module globals.
Listeners are keyed by event type; ``"*"`` receives everything.
"""

import inspect
from collections import defaultdict
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

Listener = Callable[[Any], Any]

WILDCARD = "*"


class EventRegistry:
    """Registry of listeners for typed events."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event_type: str, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners[event_type].append(listener)

        def unsubscribe() -> None:
            self.off(event_type, listener)

        return unsubscribe

    def off(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def clear(self) -> None:
        self._listeners.clear()

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event_type, []))

    async def emit(self, event: Any, event_type: str | None = None) -> None:
        """Deliver ``event`` to its listeners.

        The event type defaults to ``event.type``. A failing listener is
        logged and does not stop delivery to the others.
        """
        event_type = event_type or getattr(event, "type", None) or type(event).__name__
        listeners = list(self._listeners.get(event_type, [])) + list(self._listeners.get(WILDCARD, []))

        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "Event listener failed",
                    event_type=event_type,
                    error=str(e),
                )
