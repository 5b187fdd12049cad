"""Concurrent tool dispatch with per-call deadlines.

Every requested call runs in its own asyncio task. A call settles exactly
once: either with the tool's own result or, when its watchdog timer fires
first, with a timeout failure. Whatever arrives after settling is
discarded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tandem.chat.models import Message, ToolCallResult
from tandem.engine.cancellation import CancellationToken
from tandem.engine.undo import UndoLedger
from tandem.engine.watchdog import ToolCallTimerKey, WatchdogTimer
from tandem.exceptions import ToolFailureError, ToolTimeoutError, UnknownToolError
from tandem.models.base import ToolCall
from tandem.recovery.describe import tool_call_failed
from tandem.tools.registry import ToolContext, ToolRegistry
from tandem.utils.latency import elapsed_ms, log_latency_event

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = ToolTimeoutError.MESSAGE

ResultCallback = Callable[[ToolCallResult], Awaitable[Any] | Any]


@dataclass
class _PendingCall:
    call: ToolCall
    future: asyncio.Future[ToolCallResult | None]
    started: float = field(default_factory=time.monotonic)
    task: asyncio.Task[None] | None = None
    settled: bool = False


class ToolDispatcher:
    """Runs a batch of tool calls in parallel and reports each as it settles."""

    def __init__(self, undo_ledger: UndoLedger, default_timeout_seconds: float = 30.0):
        self._undo = undo_ledger
        self._default_timeout = default_timeout_seconds

    async def dispatch(
        self,
        chat_id: str,
        calls: list[ToolCall],
        registry: ToolRegistry,
        history_snapshot: list[Message],
        timer: WatchdogTimer,
        on_each_result: ResultCallback,
        token: CancellationToken,
    ) -> list[ToolCallResult]:
        """Execute ``calls`` concurrently and return their results in call order.

        Calls to tools that need the user's answer are not executed; they
        come back flagged ``requires_user_interaction`` and are not passed
        to ``on_each_result``. Results that settle after ``token`` is
        cancelled are dropped.
        """
        loop = asyncio.get_running_loop()
        interactive: dict[str, ToolCallResult] = {}
        pending: list[_PendingCall] = []

        for call in calls:
            tool = registry.get(call.name)
            if tool is not None and tool.requires_user_interaction:
                interactive[call.id] = ToolCallResult(
                    tool_call_id=call.id,
                    success=False,
                    requires_user_interaction=True,
                )
                continue

            entry = _PendingCall(call=call, future=loop.create_future())
            pending.append(entry)
            timeout = self._default_timeout
            if tool is not None and tool.timeout_seconds is not None:
                timeout = tool.timeout_seconds
            ctx = ToolContext(chat_id=chat_id, tool_call_id=call.id, history=history_snapshot)
            entry.task = loop.create_task(
                self._run(chat_id, entry, registry, ctx, timer, on_each_result, token)
            )
            timer.set(
                ToolCallTimerKey(call.id),
                lambda e=entry, t=timeout: self._settle(
                    chat_id, e, ToolCallResult.from_error(
                        ToolTimeoutError(e.call.id, t), duration_ms=elapsed_ms(e.started),
                    ),
                    timer, on_each_result, token, timed_out=True,
                ),
                timeout,
            )

        def _abandon() -> None:
            for entry in pending:
                if not entry.settled:
                    entry.settled = True
                    timer.clear(ToolCallTimerKey(entry.call.id))
                    if entry.task is not None:
                        entry.task.cancel()
                    if not entry.future.done():
                        entry.future.set_result(None)

        token.on_cancel(_abandon)

        try:
            settled = await asyncio.gather(*(e.future for e in pending))
        except asyncio.CancelledError:
            _abandon()
            raise
        finally:
            token.remove_on_cancel(_abandon)

        by_id = {r.tool_call_id: r for r in settled if r is not None}
        by_id.update(interactive)
        return [by_id[c.id] for c in calls if c.id in by_id]

    async def _run(
        self,
        chat_id: str,
        entry: _PendingCall,
        registry: ToolRegistry,
        ctx: ToolContext,
        timer: WatchdogTimer,
        on_each_result: ResultCallback,
        token: CancellationToken,
    ) -> None:
        call = entry.call
        try:
            outcome = await registry.execute(call.name, call.arguments, ctx)
        except asyncio.CancelledError:
            raise
        except UnknownToolError as e:
            result = ToolCallResult.from_error(
                ToolFailureError(call.id, tool_call_failed(call.name, e), original=e),
                duration_ms=elapsed_ms(entry.started),
            )
        except Exception as e:
            duration = elapsed_ms(entry.started)
            logger.info("Tool %s (%s) failed: %s", call.name, call.id, e)
            result = ToolCallResult.from_error(
                ToolFailureError(
                    call.id, tool_call_failed(call.name, e, call.arguments, duration), original=e,
                ),
                duration_ms=duration,
            )
        else:
            result = ToolCallResult.ok(
                call.id, outcome.output, duration_ms=elapsed_ms(entry.started), undo=outcome.undo,
            )
        await self._settle(chat_id, entry, result, timer, on_each_result, token)

    async def _settle(
        self,
        chat_id: str,
        entry: _PendingCall,
        result: ToolCallResult,
        timer: WatchdogTimer,
        on_each_result: ResultCallback,
        token: CancellationToken,
        timed_out: bool = False,
    ) -> None:
        call = entry.call
        if entry.settled:
            logger.debug("Discarding late result for tool call %s", call.id)
            return
        entry.settled = True
        timer.clear(ToolCallTimerKey(call.id))

        if timed_out and entry.task is not None:
            entry.task.cancel()

        log_latency_event(
            logger,
            event="tool_call",
            duration_seconds=result.duration_ms / 1000.0,
            fields={
                "tool": call.name,
                "outcome": "ok" if result.success else ("timeout" if timed_out else "error"),
            },
        )

        if token.cancelled:
            logger.info("Discarding result for tool call %s: turn was cancelled", call.id)
            if not entry.future.done():
                entry.future.set_result(None)
            return

        try:
            if result.success and result.undo is not None:
                self._undo.record(chat_id, call.id, result.undo, call.name)
            outcome = on_each_result(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("Result handler for tool call %s failed: %s", call.id, e)
        finally:
            if not entry.future.done():
                entry.future.set_result(result)
