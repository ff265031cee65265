"""
Event Bus — the composition primitive between watchers, content items and the orchestrator.

Events are closed enums (one per component) rather than ad hoc strings.
Dispatch is synchronous; a handler that returns a coroutine is scheduled
on the running loop and tracked until it finishes.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)


class WatcherEvent(str, Enum):
    FOUND = "element-found"
    FOUND_TIMEOUT = "element-found-timeout"
    CHANGED = "element-changed"


class ContentEvent(str, Enum):
    STARTED = "content-started"
    SHOWN = "content-shown"
    HIDDEN = "content-hidden"
    CLOSED = "content-closed"
    DESTROYED = "content-destroyed"
    STEP_CHANGED = "step-changed"
    CHECKLIST_EXPANDED = "checklist-expanded"


class OrchestratorEvent(str, Enum):
    READY = "ready"
    CONTENTS_CHANGED = "contents-changed"
    TOUR_ACTIVATED = "tour-activated"
    TOUR_RELEASED = "tour-released"


class _Listener:
    __slots__ = ("handler", "once")

    def __init__(self, handler: Callable, once: bool):
        self.handler = handler
        self.once = once


class EventBus:
    """Minimal pub/sub with one-shot subscriptions and per-handler error isolation."""

    def __init__(self):
        self._listeners: Dict[Enum, List[_Listener]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def on(self, event: Enum, handler: Callable) -> Callable[[], None]:
        """Subscribe to an event. Returns a callable that unsubscribes."""
        self._listeners[event].append(_Listener(handler, once=False))
        return lambda: self.off(event, handler)

    def once(self, event: Enum, handler: Callable) -> Callable[[], None]:
        """Subscribe for a single delivery."""
        self._listeners[event].append(_Listener(handler, once=True))
        return lambda: self.off(event, handler)

    def off(self, event: Enum, handler: Callable = None) -> None:
        """Remove one handler, or every handler of the event when none is given."""
        if handler is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event)
        if not listeners:
            return
        self._listeners[event] = [l for l in listeners if l.handler is not handler]

    def off_all(self) -> None:
        self._listeners.clear()

    def listener_count(self, event: Enum) -> int:
        return len(self._listeners.get(event, []))

    def trigger(self, event: Enum, payload: Any = None) -> int:
        """
        Deliver an event to its current subscribers.

        Returns the number of handlers invoked. A failing handler is logged
        and does not prevent the others from running.
        """
        listeners = list(self._listeners.get(event, []))
        if not listeners:
            return 0

        remaining = [l for l in self._listeners[event] if not l.once]
        self._listeners[event] = remaining

        for listener in listeners:
            try:
                result = listener.handler(payload)
            except Exception:
                logger.exception("Handler for %s failed", event.value)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return len(listeners)

    def _schedule(self, event: Enum, awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Async handler for %s failed: %s", event.value, t.exception()
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for every async handler scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
