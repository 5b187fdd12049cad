"""Prompt collaborators consumed by the turn controller.

The engine treats everything produced here as opaque: the system prompt
is passed through to the transport and snippets are attached to the
request without interpretation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from tandem.chat.models import Conversation, Message, PromptSnippet

__all__ = [
    "ContextSupplier",
    "PromptBuilder",
    "PromptSnippet",
    "StaticPromptBuilder",
    "TitleGenerator",
]


class PromptBuilder(ABC):
    """Supplies the opening system instruction for a request."""

    @abstractmethod
    async def build_system_prompt(self, conversation: Conversation) -> str:
        ...


class ContextSupplier(ABC):
    """Supplies read-only context snippets before a turn starts."""

    @abstractmethod
    async def snippets(self, chat_id: str, query: str) -> list[PromptSnippet]:
        ...


class TitleGenerator(ABC):
    """Derives a conversation title from its opening history."""

    @abstractmethod
    async def generate(self, history: list[Message]) -> str:
        ...


class StaticPromptBuilder(PromptBuilder):
    def __init__(self, text: str):
        self._text = text

    async def build_system_prompt(self, conversation: Conversation) -> str:
        return self._text
