"""Undo ledger for reversible tool effects.

Each conversation keeps a stack of ``UndoEntry`` rows. An entry is a
plain value naming a handle in the ``UndoHandleRegistry``; the callable
itself never lives in conversation state. Rewinding history to a user
message first undoes, most recent first, every entry that belongs to a
later message, then drops the target message and everything after it so
the caller can edit and resend it.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any

from tandem.chat.models import AgentErrorKind, ConversationError, StoreState, UndoEntry
from tandem.chat.store import ChatStore
from tandem.events.bus import Event, EventBus
from tandem.events.types import UNDO_APPLIED
from tandem.exceptions import UndoFailedError
from tandem.recovery.describe import sanitize

logger = logging.getLogger(__name__)

UndoHandle = Callable[[], Awaitable[Any] | Any]


class UndoHandleRegistry:
    """Maps opaque handle keys to undo callables."""

    def __init__(self) -> None:
        self._handles: dict[str, UndoHandle] = {}
        self._counter = itertools.count(1)

    def register(self, handle: UndoHandle) -> str:
        key = f"undo-{next(self._counter)}"
        self._handles[key] = handle
        return key

    def get(self, key: str) -> UndoHandle | None:
        return self._handles.get(key)

    def release(self, key: str) -> None:
        self._handles.pop(key, None)

    def __len__(self) -> int:
        return len(self._handles)


class UndoLedger:
    """Per-conversation stacks of reversible tool effects."""

    def __init__(
        self,
        store: ChatStore,
        handles: UndoHandleRegistry | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._handles = handles or UndoHandleRegistry()
        self._events = event_bus
        self._stacks: dict[str, list[UndoEntry]] = {}

    @property
    def handles(self) -> UndoHandleRegistry:
        return self._handles

    def record(
        self,
        chat_id: str,
        tool_call_id: str,
        handle: UndoHandle,
        tool_name: str = "",
    ) -> UndoEntry:
        entry = UndoEntry(
            tool_call_id=tool_call_id,
            handle_key=self._handles.register(handle),
            tool_name=tool_name,
        )
        self._stacks.setdefault(chat_id, []).append(entry)
        return entry

    def entries(self, chat_id: str) -> list[UndoEntry]:
        return list(self._stacks.get(chat_id, []))

    def drop_chat(self, chat_id: str) -> None:
        """Forget every entry of a conversation without invoking its handles."""
        for entry in self._stacks.pop(chat_id, []):
            self._handles.release(entry.handle_key)

    def has_entries_after(self, chat_id: str, message_id: str) -> bool:
        later = self._tool_call_ids_from(chat_id, message_id)
        return any(e.tool_call_id in later for e in self._stacks.get(chat_id, []))

    async def rewind_to(self, chat_id: str, user_message_id: str) -> bool:
        """Undo later tool effects, then truncate history just before the target.

        Returns False when the conversation or target message does not
        exist, in which case nothing changes. Raises ``UndoFailedError``
        when a handle fails; the transcript is then left untouched.
        """
        conversation = self._store.get(chat_id)
        if conversation is None:
            return False
        index = conversation.index_of(user_message_id)
        if index < 0:
            return False

        later = self._tool_call_ids_from(chat_id, user_message_id)
        stack = self._stacks.get(chat_id, [])
        undone: Counter[str] = Counter()

        while stack and stack[-1].tool_call_id in later:
            entry = stack[-1]
            handle = self._handles.get(entry.handle_key)
            if handle is not None:
                try:
                    result = handle()
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(
                        "Undo of %s (%s) failed: %s", entry.tool_call_id, entry.tool_name, e,
                    )
                    error = UndoFailedError(entry.tool_call_id, str(e))
                    self._set_error(chat_id, error)
                    raise error from e
            stack.pop()
            self._handles.release(entry.handle_key)
            undone[entry.tool_name or "unknown"] += 1

        def _truncate(state: StoreState) -> None:
            conv = state.conversations[chat_id]
            del conv.messages[index:]

        self._store.mutate(_truncate)
        self._prune(chat_id)

        if undone:
            logger.info("Rewound chat %s: undid %d tool effect(s)", chat_id, sum(undone.values()))
            if self._events is not None:
                self._events.emit(Event(
                    event_type=UNDO_APPLIED,
                    chat_id=chat_id,
                    data={"counts": dict(undone)},
                ))
        return True

    def _tool_call_ids_from(self, chat_id: str, message_id: str) -> set[str]:
        conversation = self._store.get(chat_id)
        if conversation is None:
            return set()
        index = conversation.index_of(message_id)
        if index < 0:
            return set()
        return {
            part.tool_call_id
            for message in conversation.messages[index:]
            for part in message.tool_call_parts()
        }

    def _prune(self, chat_id: str) -> None:
        conversation = self._store.get(chat_id)
        stack = self._stacks.get(chat_id)
        if conversation is None or not stack:
            return
        live = conversation.tool_call_ids()
        kept: list[UndoEntry] = []
        for entry in stack:
            if entry.tool_call_id in live:
                kept.append(entry)
            else:
                self._handles.release(entry.handle_key)
        self._stacks[chat_id] = kept

    def _set_error(self, chat_id: str, error: UndoFailedError) -> None:
        def _apply(state: StoreState) -> None:
            conv = state.conversations.get(chat_id)
            if conv is not None:
                conv.error = ConversationError(
                    kind=AgentErrorKind.UNDO_FAILED,
                    message=sanitize(str(error)),
                )

        self._store.mutate(_apply)
