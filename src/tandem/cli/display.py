"""Terminal display for replayed turns.

Renders streamed text, tool results and conversation errors with ANSI
colors.
"""

from __future__ import annotations

import json
import sys

from tandem.chat.models import Conversation, ToolCallResult
from tandem.models.base import (
    Chunk,
    ReasoningDelta,
    StepBoundary,
    StreamFinished,
    TextDelta,
    ToolInputAvailable,
)


# ANSI color codes
class _C:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    GRAY = "\033[90m"


def display_chunk(chunk: Chunk) -> None:
    """Display one streamed chunk as it arrives."""
    if isinstance(chunk, TextDelta):
        sys.stdout.write(chunk.delta)
    elif isinstance(chunk, ReasoningDelta):
        sys.stdout.write(f"{_C.DIM}{chunk.delta}{_C.RESET}")
    elif isinstance(chunk, StepBoundary):
        sys.stdout.write("\n")
    elif isinstance(chunk, ToolInputAvailable):
        sys.stdout.write(
            f"\n  {_C.GRAY}  {chunk.tool_name}{_C.RESET}"
            f" {_C.DIM}{_summarize_args(chunk.input)}{_C.RESET}\n"
        )
    elif isinstance(chunk, StreamFinished):
        sys.stdout.write("\n")
    sys.stdout.flush()


def display_tool_result(result: ToolCallResult) -> None:
    elapsed = f"{result.duration_ms}ms" if result.duration_ms else ""
    if result.success:
        icon = f"{_C.GREEN}ok{_C.RESET}"
        preview = _preview(result.output)
    else:
        icon = f"{_C.RED}err{_C.RESET}"
        preview = result.error.message if result.error else ""
    sys.stdout.write(
        f"  {_C.GRAY}  {icon} {_C.DIM}{elapsed}{_C.RESET}"
        f" {_C.DIM}{preview}{_C.RESET}\n"
    )
    sys.stdout.flush()


def display_turn_summary(conversation: Conversation, credits: float | None = None) -> None:
    """Display the error (if any) and usage after a turn."""
    if conversation.error is not None:
        error = conversation.error
        sys.stdout.write(f"\n{_C.RED}{_C.BOLD}{error.kind.value}:{_C.RESET} {error.message}\n")

    calls = sum(len(m.tool_call_parts()) for m in conversation.messages)
    usage = conversation.usage
    line = (
        f"[{len(conversation.messages)} messages"
        f" | {calls} tool call{'s' if calls != 1 else ''}"
        f" | {usage.used_context_window_size} context tokens"
    )
    if credits is not None:
        line += f" | {credits:g} credits"
    sys.stdout.write(f"\n{_C.DIM}{line}]{_C.RESET}\n")
    sys.stdout.flush()


def display_title(conversation: Conversation) -> None:
    sys.stdout.write(f"\n{_C.BOLD}{conversation.title}{_C.RESET}\n")
    sys.stdout.flush()


def display_user_message(text: str) -> None:
    sys.stdout.write(f"{_C.CYAN}> {_C.RESET}{text}\n")
    sys.stdout.flush()


def _summarize_args(args: dict) -> str:
    if not args:
        return ""
    text = ", ".join(f"{k}={v!r}" for k, v in args.items())
    return text[:80] + ("..." if len(text) > 80 else "")


def _preview(output: object, limit: int = 80) -> str:
    if output is None:
        return ""
    text = output if isinstance(output, str) else json.dumps(output, default=str)
    first_line = text.splitlines()[0] if text else ""
    if len(first_line) > limit:
        return first_line[:limit] + "..."
    return first_line
