"""Shared test fixtures for Tandem."""

from __future__ import annotations

import asyncio

import pytest

from tandem.auth.credentials import CredentialProvider, Credentials
from tandem.chat.models import Conversation, Message
from tandem.chat.store import ChatStore, EventBusSink
from tandem.config import TurnConfig
from tandem.engine.turn import TurnController
from tandem.events.bus import EventBus
from tandem.exceptions import CredentialRefreshError
from tandem.models.base import (
    ModelRequest,
    ModelTransport,
    StreamFinished,
    TextDelta,
    ToolCall,
    ToolInputAvailable,
)
from tandem.tools.registry import Tool, ToolContext, ToolOutcome, ToolRegistry


class FakeTransport(ModelTransport):
    """Replays one list of chunks per request.

    A turn may be an exception (raised when the stream is opened) or a
    list that contains exceptions (raised when that position is pulled).
    """

    def __init__(self, turns: list):
        self._turns = list(turns)
        self.requests: list[ModelRequest] = []
        self.pulls = 0

    def open(self, request, token):
        self.requests.append(request)
        if not self._turns:
            return self._stream([StreamFinished()])
        turn = self._turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        return self._stream(turn)

    async def _stream(self, chunks):
        for chunk in chunks:
            self.pulls += 1
            if isinstance(chunk, BaseException):
                raise chunk
            if isinstance(chunk, asyncio.Event):
                await chunk.wait()
                continue
            yield chunk


class FakeCredentialProvider(CredentialProvider):
    def __init__(self, fail: bool = False, error: Exception | None = None):
        self.calls: list[str] = []
        self._fail = fail
        self._error = error

    async def refresh(self, refresh_token: str) -> Credentials:
        self.calls.append(refresh_token)
        if self._error is not None:
            raise self._error
        if self._fail:
            raise CredentialRefreshError("Refresh token rejected")
        n = len(self.calls)
        return Credentials(access_token=f"access-{n}", refresh_token=f"refresh-{n}")


class EchoTool(Tool):
    name = "echo"
    description = "Echo the text argument."
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        return ToolOutcome.ok(args.get("text", ""))


class UndoableTool(Tool):
    """Appends to a shared log; its undo handle records the reversal."""

    name = "edit"
    description = "Pretend to edit a file."
    parameters = {"type": "object", "properties": {"path": {"type": "string"}}}

    def __init__(self, log: list[str] | None = None):
        self.log = log if log is not None else []

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        self.log.append(f"do:{ctx.tool_call_id}")

        async def undo() -> None:
            self.log.append(f"undo:{ctx.tool_call_id}")

        return ToolOutcome.ok(f"edited {args.get('path', '')}", undo=undo)


class SlowTool(Tool):
    name = "slow"
    description = "Never finishes in time."
    parameters = {"type": "object", "properties": {}}

    def __init__(self, seconds: float = 10.0, timeout: float | None = 0.05):
        self._seconds = seconds
        self._timeout = timeout
        self.cancelled = False

    @property
    def timeout_seconds(self) -> float | None:
        return self._timeout

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        try:
            await asyncio.sleep(self._seconds)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolOutcome.ok("finished late")


class FailingTool(Tool):
    name = "broken"
    description = "Always raises."
    parameters = {"type": "object", "properties": {}}

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        raise RuntimeError("disk is full")


class QuestionTool(Tool):
    name = "ask_user"
    description = "Ask the user."
    parameters = {"type": "object", "properties": {"question": {"type": "string"}}}

    @property
    def requires_user_interaction(self) -> bool:
        return True

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        raise AssertionError("interactive tools are never executed")


def text_turn(message_id: str, *deltas: str) -> list:
    chunks: list = [TextDelta(message_id, 0, d) for d in deltas]
    chunks.append(StreamFinished())
    return chunks


def tool_turn(message_id: str, *calls: tuple[str, str, dict]) -> list:
    """A turn that announces and requests ``(tool_call_id, tool_name, input)`` calls."""
    chunks: list = []
    requested: list[ToolCall] = []
    for index, (call_id, name, args) in enumerate(calls):
        chunks.append(ToolInputAvailable(message_id, index, call_id, name, args))
        requested.append(ToolCall(id=call_id, name=name, arguments=args))
    chunks.append(StreamFinished(tool_calls=requested))
    return chunks


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus: EventBus) -> ChatStore:
    return ChatStore(EventBusSink(bus))


@pytest.fixture
def chat(store: ChatStore) -> Conversation:
    conversation = store.add(Conversation.create())

    def _add_user(state):
        state.conversations[conversation.id].messages.append(Message.user("hi"))

    store.mutate(_add_user)
    return store.require(conversation.id)


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(EchoTool())
    reg.register(FailingTool())
    reg.register(QuestionTool())
    return reg


@pytest.fixture
def make_controller(store: ChatStore, registry: ToolRegistry, bus: EventBus):
    def _make(transport: ModelTransport, **kwargs) -> TurnController:
        kwargs.setdefault("config", TurnConfig())
        kwargs.setdefault("event_bus", bus)
        return TurnController(transport, registry, store, **kwargs)

    return _make
