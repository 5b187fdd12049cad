"""Scripted model transport.

Replays pre-recorded model turns from YAML. Each request consumes the
next turn of the script. A script looks like::

    prompt: Save a note called todo
    turns:
      - - {type: text, message_id: a1, part: 0, delta: "Saving it."}
        - {type: tool_input, message_id: a1, part: 1, tool_call_id: c1,
           tool: write_note, input: {name: todo, content: buy milk}}
        - {type: finish}
      - - {type: text, message_id: a2, part: 0, delta: "Done."}
        - {type: finish, usage: {input_tokens: 120, output_tokens: 8}}

``finish`` without ``tool_calls`` requests every tool announced by a
``tool_input`` chunk of the same turn. An ``error`` entry raises the
matching exception instead of yielding a chunk.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tandem.engine.cancellation import CancellationToken
from tandem.exceptions import (
    AuthExpiredError,
    ContextLimitError,
    InsufficientCreditsError,
    QuotaExceededError,
    TandemError,
    TransportError,
)
from tandem.models.base import (
    Chunk,
    ModelRequest,
    ModelTransport,
    ReasoningDelta,
    StepBoundary,
    StreamFinished,
    TextDelta,
    TokenUsage,
    ToolCall,
    ToolInputAvailable,
    ToolInputStart,
)

logger = logging.getLogger(__name__)


class ScriptError(TandemError):
    """Raised when a replay script cannot be parsed."""


@dataclass
class Script:
    prompt: str = ""
    turns: list[list[dict[str, Any]]] = field(default_factory=list)


def load_script(path: Path) -> Script:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ScriptError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ScriptError(f"Cannot read script {path}: {e}") from e
    return parse_script(raw)


def parse_script(raw: Any) -> Script:
    if isinstance(raw, list):
        raw = {"turns": raw}
    if not isinstance(raw, dict):
        raise ScriptError("Script must be a mapping with a 'turns' list")
    turns = raw.get("turns") or []
    if not isinstance(turns, list) or not all(isinstance(t, list) for t in turns):
        raise ScriptError("'turns' must be a list of chunk lists")
    for i, turn in enumerate(turns):
        for entry in turn:
            if not isinstance(entry, dict) or "type" not in entry:
                raise ScriptError(f"Turn {i}: every chunk needs a 'type'")
    return Script(prompt=str(raw.get("prompt", "")), turns=turns)


class ScriptedTransport(ModelTransport):
    """Transport that replays a ``Script`` one turn per request."""

    def __init__(self, script: Script, chunk_delay_seconds: float = 0.0):
        self._script = script
        self._delay = chunk_delay_seconds
        self._next_turn = 0
        self.requests: list[ModelRequest] = []

    @classmethod
    def from_yaml(cls, path: Path, chunk_delay_seconds: float = 0.0) -> ScriptedTransport:
        return cls(load_script(path), chunk_delay_seconds)

    @property
    def remaining_turns(self) -> int:
        return len(self._script.turns) - self._next_turn

    def open(self, request: ModelRequest, token: CancellationToken) -> AsyncIterator[Chunk]:
        self.requests.append(request)
        if self._next_turn >= len(self._script.turns):
            raise TransportError("Replay script has no more turns")
        turn = self._script.turns[self._next_turn]
        self._next_turn += 1
        logger.debug("Replaying turn %d (%d entries)", self._next_turn, len(turn))
        return self._replay(turn)

    async def _replay(self, turn: list[dict[str, Any]]) -> AsyncIterator[Chunk]:
        announced: list[ToolCall] = []
        for entry in turn:
            if self._delay:
                await asyncio.sleep(self._delay)
            chunk = _to_chunk(entry, announced)
            if isinstance(chunk, ToolInputAvailable):
                announced.append(ToolCall(
                    id=chunk.tool_call_id, name=chunk.tool_name, arguments=chunk.input,
                ))
            yield chunk


def _to_chunk(entry: dict[str, Any], announced: list[ToolCall]) -> Chunk:
    kind = entry["type"]
    message_id = str(entry.get("message_id", ""))
    part = int(entry.get("part", 0))

    if kind == "text":
        return TextDelta(message_id, part, str(entry.get("delta", "")))
    if kind == "reasoning":
        return ReasoningDelta(message_id, part, str(entry.get("delta", "")))
    if kind == "step":
        return StepBoundary(message_id, part)
    if kind == "tool_start":
        return ToolInputStart(message_id, part, str(entry["tool_call_id"]), str(entry["tool"]))
    if kind == "tool_input":
        return ToolInputAvailable(
            message_id, part, str(entry["tool_call_id"]), str(entry["tool"]),
            dict(entry.get("input") or {}),
        )
    if kind == "finish":
        if "tool_calls" in entry:
            calls = [
                ToolCall(id=str(c["id"]), name=str(c["name"]), arguments=dict(c.get("arguments") or {}))
                for c in entry["tool_calls"] or []
            ]
        else:
            calls = list(announced)
        usage = None
        if entry.get("usage"):
            u = entry["usage"]
            usage = TokenUsage(
                input_tokens=int(u.get("input_tokens", 0)),
                output_tokens=int(u.get("output_tokens", 0)),
                total_tokens=int(u.get("input_tokens", 0)) + int(u.get("output_tokens", 0)),
            )
        credits = entry.get("credits")
        return StreamFinished(
            tool_calls=calls,
            usage=usage,
            credits=float(credits) if credits is not None else None,
        )
    if kind == "error":
        raise _to_error(entry)
    raise ScriptError(f"Unknown chunk type: {kind}")


def _to_error(entry: dict[str, Any]) -> Exception:
    kind = entry.get("kind", "transport")
    message = str(entry.get("message", ""))
    if kind == "auth":
        return AuthExpiredError(message or "Unauthorized")
    if kind == "quota":
        return QuotaExceededError(
            int(entry.get("cooldown_minutes", 60)), bool(entry.get("is_paid_plan", False)),
        )
    if kind == "credits":
        return InsufficientCreditsError(message or "Insufficient credits")
    if kind == "context":
        return ContextLimitError(message or "Context limit exceeded")
    return TransportError(message or "Transport failure")
