"""Chat store and broadcast sinks.

The store owns the authoritative ``StoreState``. Every change goes through
``ChatStore.mutate``, which applies the change and then commits a deep copy
to the configured sink so observers never see a half-applied mutation.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TypeVar

from tandem.chat.models import Conversation, StoreState
from tandem.events.bus import Event, EventBus
from tandem.events.types import CONVERSATION_UPDATED
from tandem.exceptions import ChatNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BroadcastSink(ABC):
    """Receives committed state snapshots."""

    @abstractmethod
    def commit(self, snapshot: StoreState) -> None:
        ...


class NullSink(BroadcastSink):
    def commit(self, snapshot: StoreState) -> None:
        pass


class EventBusSink(BroadcastSink):
    """Publishes each committed snapshot as a ``conversation_updated`` event."""

    def __init__(self, bus: EventBus):
        self._bus = bus

    def commit(self, snapshot: StoreState) -> None:
        self._bus.emit(Event(
            event_type=CONVERSATION_UPDATED,
            chat_id=snapshot.active_chat_id or "",
            data={"state": snapshot},
        ))


class ChatStore:
    """Owner of conversations, the active chat id, and the working flag."""

    def __init__(self, sink: BroadcastSink | None = None):
        self._state = StoreState()
        self._sink = sink or NullSink()

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def working(self) -> bool:
        return self._state.working

    @property
    def active_chat_id(self) -> str | None:
        return self._state.active_chat_id

    def mutate(self, fn: Callable[[StoreState], T]) -> T:
        """Apply ``fn`` to the owned state, then commit a snapshot."""
        result = fn(self._state)
        self._commit()
        return result

    def snapshot(self) -> StoreState:
        return copy.deepcopy(self._state)

    def get(self, chat_id: str) -> Conversation | None:
        return self._state.conversations.get(chat_id)

    def require(self, chat_id: str) -> Conversation:
        conversation = self._state.conversations.get(chat_id)
        if conversation is None:
            raise ChatNotFoundError(chat_id)
        return conversation

    def add(self, conversation: Conversation, *, activate: bool = True) -> Conversation:
        def _add(state: StoreState) -> Conversation:
            state.conversations[conversation.id] = conversation
            if activate:
                state.active_chat_id = conversation.id
            return conversation

        return self.mutate(_add)

    def set_working(self, working: bool) -> bool:
        """Set the working flag. Returns whether it changed."""
        if self._state.working == working:
            return False

        def _set(state: StoreState) -> None:
            state.working = working

        self.mutate(_set)
        return True

    def _commit(self) -> None:
        try:
            self._sink.commit(self.snapshot())
        except Exception as e:
            logger.warning("Broadcast sink commit failed: %s", e)
