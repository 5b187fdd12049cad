"""Abstract model transport interface.

A transport turns a ``ModelRequest`` into a strictly ordered, finite
stream of chunks. Every chunk except ``StreamFinished`` addresses a
message id and a part index inside that message.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tandem.chat.models import Message, PromptSnippet
    from tandem.engine.cancellation import CancellationToken


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict


@dataclass
class TokenUsage:
    """Token usage statistics for a model response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ModelRequest:
    """Everything a transport needs for one model call."""

    chat_id: str
    messages: list[Message]
    system_prompt: str = ""
    tools: list[dict] = field(default_factory=list)
    snippets: list[PromptSnippet] = field(default_factory=list)
    access_token: str = ""


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

@dataclass
class TextDelta:
    message_id: str
    part_index: int
    delta: str


@dataclass
class ReasoningDelta:
    message_id: str
    part_index: int
    delta: str


@dataclass
class ToolInputStart:
    message_id: str
    part_index: int
    tool_call_id: str
    tool_name: str


@dataclass
class ToolInputAvailable:
    message_id: str
    part_index: int
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepBoundary:
    message_id: str
    part_index: int


@dataclass
class StreamFinished:
    """Terminal chunk. ``tool_calls`` lists the calls the model wants run."""

    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    credits: float | None = None


Chunk = TextDelta | ReasoningDelta | ToolInputStart | ToolInputAvailable | StepBoundary | StreamFinished


class ModelTransport(ABC):
    """Abstract base class for model transports."""

    @abstractmethod
    def open(self, request: ModelRequest, token: CancellationToken) -> AsyncIterator[Chunk]:
        """Open a chunk stream for ``request``.

        Implementations are usually async generators. Failures raise,
        either when opening or while iterating.
        """
        ...

    @property
    def name(self) -> str:
        return type(self).__name__
