"""Tandem exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and the error classifier can map failures to recovery categories
without string sniffing.
"""

from __future__ import annotations


class TandemError(Exception):
    """Base for all Tandem exceptions."""


class EngineError(TandemError):
    """Turn controller, dispatcher, watchdog failures."""


class ModelError(TandemError):
    """Transport, authentication, billing failures."""


class ToolError(TandemError):
    """Tool execution failures."""


class StateError(TandemError):
    """Transcript and undo ledger failures."""


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TurnInProgressError(EngineError):
    """Raised when a turn is started while another one is still working."""


class ChatNotFoundError(EngineError):
    """Raised when an operation names a conversation that does not exist."""

    def __init__(self, chat_id: str):
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id


class TurnCancelledError(EngineError):
    """Raised inside a turn once its cancellation token has fired."""


class RecursionLimitError(EngineError):
    """Raised when a turn would recurse past the configured depth."""

    def __init__(self, depth: int, max_depth: int):
        super().__init__(f"Reached depth {depth} of {max_depth}")
        self.depth = depth
        self.max_depth = max_depth


# ---------------------------------------------------------------------------
# Model transport
# ---------------------------------------------------------------------------

class TransportError(ModelError):
    """Raised when the model transport fails to deliver a response."""

    def __init__(self, message: str, original: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original = original


class StreamProtocolError(TransportError):
    """Raised when a chunk stream violates ordering or framing rules."""


class AuthExpiredError(ModelError):
    """Raised when the access token was rejected by the model service."""

    def __init__(self, message: str = "Unauthorized", retries_left: int | None = None):
        super().__init__(message)
        self.retries_left = retries_left


class CredentialRefreshError(ModelError):
    """Raised when a refresh token cannot be exchanged for new credentials."""


class QuotaExceededError(ModelError):
    """Raised when the account hit its plan limits and must cool down."""

    def __init__(self, cooldown_minutes: int, is_paid_plan: bool = False):
        super().__init__(
            f"Plan limit exceeded, please wait {cooldown_minutes} minutes "
            "before your next request."
        )
        self.cooldown_minutes = cooldown_minutes
        self.is_paid_plan = is_paid_plan


class InsufficientCreditsError(ModelError):
    """Raised when the account balance cannot cover the request."""

    def __init__(self, message: str = "Insufficient credits"):
        super().__init__(message)


class ContextLimitError(ModelError):
    """Raised when the transcript no longer fits the model context window."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class UnknownToolError(ToolError):
    """Raised when the model requests a tool that is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolTimeoutError(ToolError):
    """Raised when a tool call outlives its deadline."""

    MESSAGE = "Tool execution timed out"

    def __init__(self, tool_call_id: str, timeout_seconds: float | None = None):
        super().__init__(self.MESSAGE)
        self.tool_call_id = tool_call_id
        self.timeout_seconds = timeout_seconds
        self.message = self.MESSAGE


class ToolFailureError(ToolError):
    """Raised when a tool call fails; ``message`` is already sanitised."""

    def __init__(self, tool_call_id: str, message: str, original: Exception | None = None):
        super().__init__(message)
        self.tool_call_id = tool_call_id
        self.message = message
        self.original = original


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class UndoFailedError(StateError):
    """Raised when an undo handle fails during a history rewind."""

    def __init__(self, tool_call_id: str, message: str):
        super().__init__(f"Undo of tool call {tool_call_id} failed: {message}")
        self.tool_call_id = tool_call_id
        self.message = message
