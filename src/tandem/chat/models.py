"""Conversation data model.

Conversations own an ordered list of messages; messages own an ordered
list of parts. Parts are a tagged union distinguished by ``type``.
Tool call parts carry a state that only ever moves forward.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tandem.exceptions import ToolError, ToolFailureError, ToolTimeoutError

DEFAULT_TITLE = "New chat"


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolCallState(Enum):
    """Lifecycle of a tool call part, in rank order."""

    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank >= _STATE_RANK[ToolCallState.OUTPUT_AVAILABLE]


_STATE_RANK = {
    ToolCallState.INPUT_STREAMING: 0,
    ToolCallState.INPUT_AVAILABLE: 1,
    ToolCallState.OUTPUT_AVAILABLE: 2,
    ToolCallState.OUTPUT_ERROR: 2,
}


class AgentErrorKind(Enum):
    AGENT_ERROR = "agent_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    AUTH_FAILED = "auth_failed"
    CONTEXT_LIMIT_EXCEEDED = "context_limit_exceeded"
    UNDO_FAILED = "undo_failed"
    RECURSION_LIMIT_EXCEEDED = "recursion_limit_exceeded"


# ---------------------------------------------------------------------------
# Parts
# ---------------------------------------------------------------------------

@dataclass
class TextPart:
    text: str = ""
    type: str = field(default="text", init=False)


@dataclass
class ReasoningPart:
    text: str = ""
    type: str = field(default="reasoning", init=False)


@dataclass
class StepBoundaryPart:
    type: str = field(default="step-start", init=False)


@dataclass
class ToolCallPart:
    """A model-requested tool invocation and, once settled, its outcome."""

    tool_name: str
    tool_call_id: str
    state: ToolCallState = ToolCallState.INPUT_STREAMING
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error_text: str | None = None
    type: str = field(default="tool-call", init=False)

    def advance(self, state: ToolCallState) -> bool:
        """Move to ``state`` unless that would regress. Returns whether it moved.

        A terminal part never changes state again, including between the
        two terminal states.
        """
        if self.state.is_terminal:
            return False
        if state.rank < self.state.rank:
            return False
        self.state = state
        return True


Part = TextPart | ReasoningPart | StepBoundaryPart | ToolCallPart


# ---------------------------------------------------------------------------
# Messages and conversations
# ---------------------------------------------------------------------------

@dataclass
class PromptSnippet:
    """A read-only piece of supporting context attached to a turn."""

    content: str
    source: str = ""


@dataclass
class MessageMetadata:
    created_at: str = ""
    snippet: PromptSnippet | None = None

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now().isoformat()


@dataclass
class Message:
    id: str
    role: Role
    parts: list[Part] = field(default_factory=list)
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    @classmethod
    def user(cls, text: str, snippet: PromptSnippet | None = None) -> Message:
        return cls(
            id=new_id("msg"),
            role=Role.USER,
            parts=[TextPart(text=text)],
            metadata=MessageMetadata(snippet=snippet),
        )

    def tool_call_parts(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


@dataclass
class UsageCounters:
    used_context_window_size: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ConversationError:
    """An error surfaced to the user on a conversation."""

    kind: AgentErrorKind
    message: str
    cooldown_minutes: int | None = None
    is_paid_plan: bool | None = None


@dataclass
class Conversation:
    id: str
    title: str = DEFAULT_TITLE
    created_at: str = ""
    messages: list[Message] = field(default_factory=list)
    error: ConversationError | None = None
    usage: UsageCounters = field(default_factory=UsageCounters)

    def __post_init__(self):
        if not self.created_at:
            self.created_at = datetime.now().isoformat()

    @classmethod
    def create(cls) -> Conversation:
        return cls(id=new_id("chat"))

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return -1

    def find_tool_call(self, tool_call_id: str) -> ToolCallPart | None:
        for message in self.messages:
            for part in message.tool_call_parts():
                if part.tool_call_id == tool_call_id:
                    return part
        return None

    def tool_call_ids(self) -> set[str]:
        return {
            part.tool_call_id
            for message in self.messages
            for part in message.tool_call_parts()
        }

    def latest_user_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role is Role.USER:
                return message
        return None

    def last_assistant_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role is Role.ASSISTANT:
                return message
        return None

    def user_message_count(self) -> int:
        return sum(1 for m in self.messages if m.role is Role.USER)


# ---------------------------------------------------------------------------
# Tool results and undo bookkeeping
# ---------------------------------------------------------------------------

@dataclass
class ToolCallError:
    message: str
    cause: ToolError | None = None


@dataclass
class ToolCallResult:
    """Outcome of one dispatched tool call, consumed exactly once."""

    tool_call_id: str
    success: bool
    output: Any = None
    error: ToolCallError | None = None
    duration_ms: int = 0
    undo: Any | None = None
    requires_user_interaction: bool = False

    @classmethod
    def ok(cls, tool_call_id: str, output: Any, **kwargs) -> ToolCallResult:
        return cls(tool_call_id=tool_call_id, success=True, output=output, **kwargs)

    @classmethod
    def from_error(cls, error: ToolTimeoutError | ToolFailureError, **kwargs) -> ToolCallResult:
        return cls(
            tool_call_id=error.tool_call_id,
            success=False,
            error=ToolCallError(message=error.message, cause=error),
            **kwargs,
        )


@dataclass(frozen=True)
class UndoEntry:
    """Ledger row pointing at a registered undo handle."""

    tool_call_id: str
    handle_key: str
    tool_name: str = ""


@dataclass
class StoreState:
    """Everything the chat store owns and broadcasts."""

    conversations: dict[str, Conversation] = field(default_factory=dict)
    active_chat_id: str | None = None
    working: bool = False
    credits: float | None = None
