"""Tests for cancellation tokens."""

import pytest

from tandem.engine.cancellation import CancellationToken
from tandem.exceptions import TurnCancelledError


class TestCancellationToken:
    def test_callbacks_run_synchronously_in_order(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        token.on_cancel(lambda: calls.append(2))

        token.cancel()

        assert token.cancelled
        assert calls == [1, 2]

    def test_cancel_is_one_shot(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append("x"))
        token.cancel()
        token.cancel()
        assert calls == ["x"]

    def test_late_registration_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_failing_callback_does_not_stop_others(self):
        token = CancellationToken()
        calls = []

        def boom():
            raise RuntimeError("boom")

        token.on_cancel(boom)
        token.on_cancel(lambda: calls.append("after"))
        token.cancel()
        assert calls == ["after"]

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(TurnCancelledError):
            token.raise_if_cancelled()

    def test_removed_callback_does_not_run(self):
        token = CancellationToken()
        calls = []

        def hook():
            calls.append("hook")

        token.on_cancel(hook)
        assert token.callback_count == 1
        token.remove_on_cancel(hook)
        token.remove_on_cancel(hook)
        assert token.callback_count == 0
        token.cancel()
        assert calls == []
