"""Turn-scoped cancellation tokens."""

from __future__ import annotations

import logging
from collections.abc import Callable

from tandem.exceptions import TurnCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal shared by everything inside a turn.

    Callbacks registered with ``on_cancel`` run synchronously inside
    ``cancel()``, in registration order. Registering on an already
    cancelled token runs the callback immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_on_cancel(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    @property
    def callback_count(self) -> int:
        return len(self._callbacks)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelledError("Turn was cancelled")
