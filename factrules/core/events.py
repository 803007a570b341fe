"""EventBus: dispatches engine lifecycle events to registered listeners."""

from __future__ import annotations

import inspect
from typing import Any, Callable

Handler = Callable[..., Any]


class EventBus:
    """Calls the handlers registered for an event type, in registration order."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event_type: str, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: Handler | None = None) -> bool:
        """Remove one handler, or every handler for ``event_type`` when omitted."""
        handlers = self._handlers.get(event_type)
        if not handlers:
            return False
        if handler is None:
            del self._handlers[event_type]
            return True
        if handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def has_listeners(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type))

    async def emit(self, event_type: str, *args: Any) -> None:
        """Call every handler for ``event_type`` with ``args``.

        Handlers may be plain functions or coroutine functions. A handler
        that raises stops dispatch and the error propagates to the caller.
        """
        for handler in list(self._handlers.get(event_type, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
