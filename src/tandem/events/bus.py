"""Event bus for Tandem.

In-process pub/sub for decoupling the turn engine from its observers.
Events are emitted by the turn controller and the undo ledger and consumed
by display code, broadcast sinks and tests.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """Base event structure."""

    event_type: str
    chat_id: str
    data: dict = field(default_factory=dict)
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()


# Callback type: sync or async function that takes an Event
EventHandler = Callable[[Event], Any]


class EventBus:
    """In-process event bus.

    Supports:
    - subscribe(event_type, handler) for type-specific listening
    - subscribe_all(handler) for global listening
    - emit(event) dispatches to all matching handlers
    """

    def __init__(self, max_history: int = 500) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._global_handlers: list[EventHandler] = []
        self._history: list[Event] = []
        self._max_history = max_history
        self._pending_tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to a specific event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)

    def emit(self, event: Event) -> None:
        """Emit an event to all matching handlers.

        Sync handlers run inline; a failing handler is logged and does not
        stop delivery to the others. Async handlers are scheduled as tasks
        on the running loop.
        """
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        handlers = [*self._global_handlers, *self._handlers.get(event.event_type, [])]
        for handler in handlers:
            if inspect.iscoroutinefunction(handler):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    logger.debug(
                        "Skipped async handler %s: no running event loop",
                        getattr(handler, "__name__", handler),
                    )
                    continue
                task = loop.create_task(handler(event))
                self._pending_tasks.add(task)
                task.add_done_callback(self._on_task_done)
                continue
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    "Event handler %s failed for %s: %s",
                    getattr(handler, "__name__", handler), event.event_type, e,
                )

    def recent_events(self, event_type: str | None = None, limit: int = 50) -> list[Event]:
        """Return recent events, optionally filtered by type."""
        events = self._history
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight async handler tasks to complete."""
        pending = list(self._pending_tasks)
        if not pending:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*pending, return_exceptions=True),
                timeout=timeout,
            )
        except TimeoutError:
            logger.warning(
                "Timed out draining %d pending event handler task(s).",
                len(self._pending_tasks),
            )

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async event handler failed: %s", exc)
