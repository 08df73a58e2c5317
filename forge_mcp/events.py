"""
Minimal named-topic publish/subscribe.

Components that need to notify the surrounding application (client
connected, server crashed, action failed, ...) inherit from
EventEmitter. Subscribers register plain callables; a callable that
returns an awaitable is scheduled on the running loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Any]


class EventEmitter:
    """Subscribe with ``on(event, handler)``, publish with ``emit(event, payload)``."""

    def __init__(self):
        self._listeners: dict[str, list[EventHandler]] = {}
        self._handler_tasks: set[asyncio.Future] = set()

    def on(self, event: str, handler: EventHandler) -> EventHandler:
        self._listeners.setdefault(event, []).append(handler)
        return handler

    def once(self, event: str, handler: EventHandler) -> EventHandler:
        def _wrapper(payload: Any) -> Any:
            self.off(event, _wrapper)
            return handler(payload)

        return self.on(event, _wrapper)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._listeners.get(event)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._listeners[event]

    def emit(self, event: str, payload: Any = None) -> bool:
        """
        Deliver payload to every handler of ``event``.

        A failing handler is logged and does not stop delivery to the
        others. Returns True if the event had any listeners.
        """
        handlers = list(self._listeners.get(event, ()))
        for handler in handlers:
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._handler_tasks.add(task)
                    task.add_done_callback(lambda t, name=event: self._handler_done(name, t))
            except Exception as e:
                logger.error(f"Event handler for '{event}' failed: {e}")
        return bool(handlers)

    def _handler_done(self, event: str, task: asyncio.Future) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async event handler for '{event}' failed: {error}")

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
