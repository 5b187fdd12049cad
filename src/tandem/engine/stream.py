"""Stream consumer: folds model chunks into the transcript.

Chunks are pulled one at a time and applied strictly in order. The
cancellation token is checked before each pull. A message is open for
append until a chunk for a different message id arrives; from then on it
is frozen and any chunk addressed to it is a protocol error.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from tandem.chat.models import (
    Conversation,
    Message,
    Part,
    ReasoningPart,
    Role,
    StepBoundaryPart,
    TextPart,
    ToolCallPart,
    ToolCallState,
)
from tandem.chat.store import ChatStore
from tandem.engine.cancellation import CancellationToken
from tandem.exceptions import StreamProtocolError
from tandem.models.base import (
    Chunk,
    ReasoningDelta,
    StepBoundary,
    StreamFinished,
    TextDelta,
    ToolInputAvailable,
    ToolInputStart,
)
from tandem.utils.latency import timed_block

logger = logging.getLogger(__name__)

UNTERMINATED_STREAM_MESSAGE = "Unknown error, please try again"

ChunkObserver = Callable[[Chunk], Any]


class StreamConsumer:
    """Applies one chunk stream to one conversation."""

    def __init__(self, store: ChatStore, on_chunk: ChunkObserver | None = None):
        self._store = store
        self._on_chunk = on_chunk

    async def consume(
        self,
        chat_id: str,
        chunks: AsyncIterator[Chunk],
        token: CancellationToken,
    ) -> StreamFinished:
        """Consume ``chunks`` until the terminal chunk and return it.

        Raises ``TurnCancelledError`` when the token fires between pulls
        and ``StreamProtocolError`` on framing violations or when the
        stream ends without a terminal chunk.
        """
        conversation = self._store.require(chat_id)
        state = _StreamState(frozen={m.id for m in conversation.messages})
        iterator = aiter(chunks)

        with timed_block(logger, event="stream_consume", fields={"chat_id": chat_id}) as fields:
            count = 0
            try:
                while True:
                    token.raise_if_cancelled()
                    try:
                        chunk = await anext(iterator)
                    except StopAsyncIteration:
                        raise StreamProtocolError(UNTERMINATED_STREAM_MESSAGE) from None
                    token.raise_if_cancelled()
                    count += 1
                    if isinstance(chunk, StreamFinished):
                        fields["chunks"] = count
                        self._notify(chunk)
                        return chunk
                    self._store.mutate(lambda s, c=chunk: state.apply(s.conversations[chat_id], c))
                    self._notify(chunk)
            finally:
                fields.setdefault("chunks", count)
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()

    def _notify(self, chunk: Chunk) -> None:
        if self._on_chunk is None:
            return
        try:
            self._on_chunk(chunk)
        except Exception as e:
            logger.warning("Chunk observer failed: %s", e)


class _StreamState:
    """Per-stream bookkeeping: which message is open and where its parts are."""

    def __init__(self, frozen: set[str]):
        self.frozen = frozen
        self.open_message_id: str | None = None
        self.parts: dict[tuple[str, int], Part] = {}

    def apply(self, conversation: Conversation, chunk: Chunk) -> None:
        message = self._message_for(conversation, chunk.message_id)

        if isinstance(chunk, TextDelta):
            part = self._part(message, chunk.part_index, TextPart)
            part.text += chunk.delta
        elif isinstance(chunk, ReasoningDelta):
            part = self._part(message, chunk.part_index, ReasoningPart)
            part.text += chunk.delta
        elif isinstance(chunk, StepBoundary):
            self._part(message, chunk.part_index, StepBoundaryPart)
        elif isinstance(chunk, ToolInputStart):
            self._tool_part(conversation, message, chunk.part_index, chunk.tool_call_id, chunk.tool_name)
        elif isinstance(chunk, ToolInputAvailable):
            part = self._tool_part(
                conversation, message, chunk.part_index, chunk.tool_call_id, chunk.tool_name,
            )
            if part.advance(ToolCallState.INPUT_AVAILABLE):
                part.input = dict(chunk.input)
        else:
            raise StreamProtocolError(f"Unexpected chunk type: {type(chunk).__name__}")

    def _message_for(self, conversation: Conversation, message_id: str) -> Message:
        if message_id in self.frozen:
            raise StreamProtocolError(f"Chunk addressed to frozen message {message_id}")
        if message_id != self.open_message_id:
            if self.open_message_id is not None:
                self.frozen.add(self.open_message_id)
            self.open_message_id = message_id
            message = Message(id=message_id, role=Role.ASSISTANT)
            conversation.messages.append(message)
            return message
        message = conversation.messages[-1]
        if message.id != message_id:
            raise StreamProtocolError(f"Open message {message_id} is no longer last")
        return message

    def _part(self, message: Message, index: int, kind: type) -> Any:
        key = (message.id, index)
        part = self.parts.get(key)
        if part is None:
            part = kind()
            message.parts.append(part)
            self.parts[key] = part
        elif not isinstance(part, kind):
            raise StreamProtocolError(
                f"Part {index} of message {message.id} is {part.type}, not {kind.__name__}"
            )
        return part

    def _tool_part(
        self,
        conversation: Conversation,
        message: Message,
        index: int,
        tool_call_id: str,
        tool_name: str,
    ) -> ToolCallPart:
        key = (message.id, index)
        part = self.parts.get(key)
        if part is None:
            if conversation.find_tool_call(tool_call_id) is not None:
                raise StreamProtocolError(f"Duplicate tool call id {tool_call_id}")
            part = ToolCallPart(tool_name=tool_name, tool_call_id=tool_call_id)
            message.parts.append(part)
            self.parts[key] = part
            return part
        if not isinstance(part, ToolCallPart) or part.tool_call_id != tool_call_id:
            raise StreamProtocolError(
                f"Part {index} of message {message.id} does not hold tool call {tool_call_id}"
            )
        return part
