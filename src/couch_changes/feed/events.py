"""Explicit event registration for follower observers."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

CHANGE = "change"
CHANGES_ERROR = "error:changes"
VIEWS_ERROR = "error:views"
VIEWS = "views"


def view_event(name: str) -> str:
    """Event name used for the rows of the view called ``name``."""
    return f"{VIEWS}:{name}"


class EventHub:
    """Per-instance registry of event handlers.

    Handlers run sequentially in registration order. A handler may be a plain
    callable or a coroutine function; coroutines are awaited before the next
    handler runs. Exceptions raised by handlers are logged and never reach the
    emitter.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Handler:
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> bool:
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def emit(self, event: str, *args: Any) -> int:
        """Invoke every handler for ``event``; returns the number invoked."""
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - observers must not stop the feed
                logger.exception("handler for %s event raised error", event)
        return len(handlers)


__all__ = [
    "CHANGE",
    "CHANGES_ERROR",
    "EventHub",
    "Handler",
    "VIEWS",
    "VIEWS_ERROR",
    "view_event",
]
