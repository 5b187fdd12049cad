"""Tests for concurrent tool dispatch."""

from __future__ import annotations

import asyncio

import pytest

from conftest import SlowTool, UndoableTool
from tandem.engine.cancellation import CancellationToken
from tandem.engine.dispatcher import TIMEOUT_MESSAGE, ToolDispatcher
from tandem.engine.undo import UndoLedger
from tandem.engine.watchdog import WatchdogTimer
from tandem.exceptions import ToolFailureError, ToolTimeoutError
from tandem.models.base import ToolCall


@pytest.fixture
def ledger(store):
    return UndoLedger(store)


@pytest.fixture
def dispatcher(ledger):
    return ToolDispatcher(ledger, default_timeout_seconds=5.0)


class TestToolDispatcher:
    async def test_results_come_back_in_call_order(self, dispatcher, registry, chat):
        reported = []
        results = await dispatcher.dispatch(
            chat.id,
            [ToolCall("c1", "echo", {"text": "one"}), ToolCall("c2", "echo", {"text": "two"})],
            registry, [], WatchdogTimer(), reported.append, CancellationToken(),
        )

        assert [r.tool_call_id for r in results] == ["c1", "c2"]
        assert [r.output for r in results] == ["one", "two"]
        assert all(r.success for r in results)
        assert sorted(r.tool_call_id for r in reported) == ["c1", "c2"]

    async def test_failure_is_reported_as_result(self, dispatcher, registry, chat):
        results = await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "broken", {})],
            registry, [], WatchdogTimer(), lambda r: None, CancellationToken(),
        )
        assert results[0].success is False
        assert "disk is full" in results[0].error.message

    async def test_unknown_tool(self, dispatcher, registry, chat):
        results = await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "nope", {})],
            registry, [], WatchdogTimer(), lambda r: None, CancellationToken(),
        )
        assert results[0].success is False
        assert "nope" in results[0].error.message

    async def test_timeout_settles_once_and_cancels_task(self, dispatcher, registry, chat):
        slow = SlowTool(seconds=10.0, timeout=0.05)
        registry.register(slow)
        reported = []

        timer = WatchdogTimer()
        results = await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "slow", {})],
            registry, [], timer, reported.append, CancellationToken(),
        )
        await asyncio.sleep(0.01)

        assert results[0].success is False
        assert results[0].error.message == TIMEOUT_MESSAGE
        assert len(reported) == 1
        assert slow.cancelled is True
        assert timer.active_keys() == []

    async def test_successful_undo_is_recorded(self, dispatcher, ledger, registry, chat):
        registry.register(UndoableTool())
        await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "edit", {"path": "a.txt"}), ToolCall("c2", "echo", {})],
            registry, [], WatchdogTimer(), lambda r: None, CancellationToken(),
        )

        entries = ledger.entries(chat.id)
        assert [e.tool_call_id for e in entries] == ["c1"]
        assert entries[0].tool_name == "edit"

    async def test_interactive_calls_are_not_executed(self, dispatcher, registry, chat):
        reported = []
        results = await dispatcher.dispatch(
            chat.id,
            [ToolCall("c1", "ask_user", {"question": "?"}), ToolCall("c2", "echo", {"text": "x"})],
            registry, [], WatchdogTimer(), reported.append, CancellationToken(),
        )

        assert results[0].requires_user_interaction is True
        assert results[1].output == "x"
        assert [r.tool_call_id for r in reported] == ["c2"]

    async def test_async_result_callback_is_awaited(self, dispatcher, registry, chat):
        reported = []

        async def on_result(result):
            await asyncio.sleep(0)
            reported.append(result.tool_call_id)

        await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "echo", {})],
            registry, [], WatchdogTimer(), on_result, CancellationToken(),
        )
        assert reported == ["c1"]

    async def test_cancel_abandons_pending_calls(self, dispatcher, registry, chat):
        slow = SlowTool(seconds=10.0, timeout=None)
        registry.register(slow)
        token = CancellationToken()
        reported = []

        async def cancel_soon():
            await asyncio.sleep(0.02)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        timer = WatchdogTimer()
        results = await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "slow", {})],
            registry, [], timer, reported.append, token,
        )
        await canceller
        await asyncio.sleep(0.01)

        assert results == []
        assert reported == []
        assert slow.cancelled is True
        assert timer.active_keys() == []

    async def test_failures_carry_typed_causes(self, dispatcher, registry, chat):
        registry.register(SlowTool(seconds=10.0, timeout=0.05))
        results = await dispatcher.dispatch(
            chat.id, [ToolCall("c1", "broken", {}), ToolCall("c2", "slow", {})],
            registry, [], WatchdogTimer(), lambda r: None, CancellationToken(),
        )

        failure, timeout = (r.error.cause for r in results)
        assert isinstance(failure, ToolFailureError)
        assert failure.tool_call_id == "c1"
        assert isinstance(failure.original, RuntimeError)
        assert isinstance(timeout, ToolTimeoutError)
        assert timeout.tool_call_id == "c2"
        assert timeout.timeout_seconds == 0.05

    async def test_cancel_hook_is_released_after_dispatch(self, dispatcher, registry, chat):
        token = CancellationToken()
        for i in range(3):
            await dispatcher.dispatch(
                chat.id, [ToolCall(f"c{i}", "echo", {"text": "x"})],
                registry, [], WatchdogTimer(), lambda r: None, token,
            )
        assert token.callback_count == 0
