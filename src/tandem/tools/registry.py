"""Tool registry and dispatch interface.

Provides registration, lookup, and schema generation for model
consumption. Timeouts and concurrency are the dispatcher's concern; the
registry only resolves a name and runs the tool.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tandem.exceptions import UnknownToolError

if TYPE_CHECKING:
    from tandem.chat.models import Message

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    """Successful result of a tool execution.

    ``undo`` is an optional callable (sync or async) that reverses the
    tool's side effect.
    """

    output: Any
    undo: Callable[[], Awaitable[Any] | Any] | None = None

    @classmethod
    def ok(cls, output: Any, undo: Callable[[], Awaitable[Any] | Any] | None = None) -> ToolOutcome:
        return cls(output=output, undo=undo)


@dataclass
class ToolContext:
    """Context passed to tool execution."""

    chat_id: str
    tool_call_id: str
    history: list[Message] = field(default_factory=list)


class Tool(ABC):
    """Abstract base class for all tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON Schema for parameters."""
        ...

    @property
    def timeout_seconds(self) -> float | None:
        """Per-tool deadline. ``None`` falls back to the turn default."""
        return None

    @property
    def requires_user_interaction(self) -> bool:
        """Whether the call must be answered by the user instead of executed."""
        return False

    @abstractmethod
    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        ...

    def schema(self) -> dict:
        """Return a function-calling tool definition."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class ToolRegistry:
    """Registry for tool registration and dispatch."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._tools_lock = threading.RLock()

    def register(self, tool: Tool) -> None:
        """Register a tool. Raises if name conflicts."""
        with self._tools_lock:
            if tool.name in self._tools:
                raise ValueError(f"Tool already registered: {tool.name}")
            self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        with self._tools_lock:
            return self._tools.get(name)

    def exclude(self, name: str) -> bool:
        """Remove a tool. Returns True if it existed."""
        with self._tools_lock:
            return self._tools.pop(name, None) is not None

    def has(self, name: str) -> bool:
        with self._tools_lock:
            return name in self._tools

    async def execute(self, name: str, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        """Execute a tool by name.

        Raises ``UnknownToolError`` for unregistered names; anything the
        tool raises propagates to the caller.
        """
        tool = self.get(name)
        if tool is None:
            raise UnknownToolError(name)
        logger.debug("Executing tool %s (%s)", name, ctx.tool_call_id)
        return await tool.execute(arguments, ctx)

    def all_schemas(self) -> list[dict]:
        """Return all tool schemas for model consumption."""
        with self._tools_lock:
            tools = list(self._tools.values())
        return [tool.schema() for tool in tools]

    def list_tools(self) -> list[str]:
        with self._tools_lock:
            return list(self._tools.keys())
