"""In-memory scratchpad tools used by ``tandem replay``.

``write_note`` is reversible: its undo handle restores the note's
previous content (or removes a note it created).
"""

from __future__ import annotations

from tandem.tools.registry import Tool, ToolContext, ToolOutcome, ToolRegistry


class Scratchpad:
    """A named-note store shared by the scratchpad tools."""

    def __init__(self) -> None:
        self.notes: dict[str, str] = {}


class WriteNoteTool(Tool):
    name = "write_note"
    description = "Create or overwrite a named note in the scratchpad."
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Note name"},
            "content": {"type": "string", "description": "Full note content"},
        },
        "required": ["name", "content"],
    }

    def __init__(self, pad: Scratchpad):
        self._pad = pad

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        name = args.get("name", "")
        if not name:
            raise ValueError("No note name provided")
        content = str(args.get("content", ""))
        previous = self._pad.notes.get(name)
        self._pad.notes[name] = content

        def undo() -> None:
            if previous is None:
                self._pad.notes.pop(name, None)
            else:
                self._pad.notes[name] = previous

        verb = "Created" if previous is None else "Updated"
        return ToolOutcome.ok(f"{verb} note '{name}' ({len(content)} chars)", undo=undo)


class ReadNoteTool(Tool):
    name = "read_note"
    description = "Read a named note from the scratchpad."
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Note name"},
        },
        "required": ["name"],
    }

    def __init__(self, pad: Scratchpad):
        self._pad = pad

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        name = args.get("name", "")
        if name not in self._pad.notes:
            raise KeyError(f"No such note: {name}")
        return ToolOutcome.ok(self._pad.notes[name])


class AskUserTool(Tool):
    """Ask the user a question; the answer arrives with the next user message."""

    name = "ask_user"
    description = (
        "Ask the developer a question when you need clarification or a "
        "decision. Use this instead of guessing."
    )
    parameters = {
        "type": "object",
        "properties": {
            "question": {"type": "string", "description": "The question to ask."},
        },
        "required": ["question"],
    }

    @property
    def requires_user_interaction(self) -> bool:
        return True

    async def execute(self, args: dict, ctx: ToolContext) -> ToolOutcome:
        return ToolOutcome.ok(f"QUESTION: {args.get('question', '')}")


def scratchpad_registry(pad: Scratchpad | None = None) -> ToolRegistry:
    """Return a registry holding the scratchpad tools over ``pad``."""
    pad = pad or Scratchpad()
    registry = ToolRegistry()
    registry.register(WriteNoteTool(pad))
    registry.register(ReadNoteTool(pad))
    registry.register(AskUserTool())
    return registry
