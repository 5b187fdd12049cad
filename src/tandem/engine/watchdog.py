"""Keyed one-shot timers on the running event loop.

Timer keys are typed per subsystem, so a working-state timer and a tool
call timer never collide even when their identifiers are equal strings.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingTimerKey:
    chat_id: str = ""


@dataclass(frozen=True)
class ToolCallTimerKey:
    tool_call_id: str


TimerKey = WorkingTimerKey | ToolCallTimerKey


@dataclass
class TimerHandle:
    key: TimerKey
    fire_at: float
    callback: Callable[[], Any]
    handle: asyncio.TimerHandle


class WatchdogTimer:
    """Set, replace and clear keyed timers.

    Callbacks may be plain functions or coroutine functions; coroutines
    are scheduled as tasks when the timer fires.
    """

    def __init__(self) -> None:
        self._timers: dict[TimerKey, TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def set(self, key: TimerKey, callback: Callable[[], Any], delay_seconds: float) -> None:
        """Arm ``callback`` under ``key``, replacing any existing timer."""
        self.clear(key)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay_seconds), self._fire, key)
        self._timers[key] = TimerHandle(
            key=key,
            fire_at=loop.time() + delay_seconds,
            callback=callback,
            handle=handle,
        )

    def clear(self, key: TimerKey) -> bool:
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry.handle.cancel()
        return True

    def clear_all(self) -> None:
        for entry in self._timers.values():
            entry.handle.cancel()
        self._timers.clear()

    def is_set(self, key: TimerKey) -> bool:
        return key in self._timers

    def active_keys(self) -> list[TimerKey]:
        return list(self._timers)

    def _fire(self, key: TimerKey) -> None:
        entry = self._timers.pop(key, None)
        if entry is None:
            return
        try:
            result = entry.callback()
        except Exception as e:
            logger.warning("Timer callback for %s failed: %s", key, e)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Async timer callback failed: %s", exc)
