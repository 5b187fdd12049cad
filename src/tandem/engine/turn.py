"""Turn controller.

Drives one conversational exchange: send the transcript to the model,
fold the streamed response into the conversation, run any requested
tools in parallel, and go round again with the refreshed transcript
until the model stops asking for tools.

Only one turn runs at a time. The turn body executes in its own task so
``abort_active_turn`` can stop it at any suspension point; the turn's
cancellation token carries the synchronous cleanup.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from typing import Any

from tandem.auth.credentials import CredentialProvider, Credentials
from tandem.chat.models import (
    AgentErrorKind,
    Conversation,
    ConversationError,
    Message,
    PromptSnippet,
    Role,
    StoreState,
    ToolCallPart,
    ToolCallResult,
    ToolCallState,
    new_id,
)
from tandem.chat.store import ChatStore
from tandem.config import TurnConfig
from tandem.engine.cancellation import CancellationToken
from tandem.engine.classifier import ErrorCategory, classify
from tandem.engine.dispatcher import ToolDispatcher
from tandem.engine.stream import ChunkObserver, StreamConsumer
from tandem.engine.undo import UndoLedger
from tandem.engine.watchdog import WatchdogTimer, WorkingTimerKey
from tandem.events import types as ev
from tandem.events.bus import Event, EventBus
from tandem.exceptions import (
    AuthExpiredError,
    ChatNotFoundError,
    CredentialRefreshError,
    RecursionLimitError,
    TurnInProgressError,
)
from tandem.models.base import ModelRequest, ModelTransport, StreamFinished, ToolCall
from tandem.prompts.base import ContextSupplier, PromptBuilder, TitleGenerator
from tandem.recovery.describe import (
    authentication_failed,
    format_error_description,
    recursion_depth_exceeded,
    sanitize,
)
from tandem.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

ABORTED_MESSAGE = "Tool execution aborted by user"
CANCELLED_INPUT_MESSAGE = "Tool execution cancelled by user"
AUTH_FAILED_MESSAGE = "Authentication failed, please restart the cli."
CONTEXT_LIMIT_MESSAGE = "This chat exceeds the context limit. Please start a new chat."

ResultObserver = Callable[[ToolCallResult], Any]


class TurnController:
    """Runs turns against one chat store.

    Collaborators are injected; nothing here is process-global. The
    controller owns the watchdog, the undo ledger and the dispatcher.
    """

    def __init__(
        self,
        transport: ModelTransport,
        registry: ToolRegistry,
        store: ChatStore,
        *,
        config: TurnConfig | None = None,
        credential_provider: CredentialProvider | None = None,
        credentials: Credentials | None = None,
        prompt_builder: PromptBuilder | None = None,
        context_supplier: ContextSupplier | None = None,
        title_generator: TitleGenerator | None = None,
        event_bus: EventBus | None = None,
        undo_ledger: UndoLedger | None = None,
        on_chunk: ChunkObserver | None = None,
        on_tool_result: ResultObserver | None = None,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._store = store
        self._config = config or TurnConfig()
        self._credential_provider = credential_provider
        self._credentials = credentials
        self._prompt_builder = prompt_builder
        self._context_supplier = context_supplier
        self._title_generator = title_generator
        self._events = event_bus
        self._on_tool_result = on_tool_result

        self._timer = WatchdogTimer()
        self._undo = undo_ledger or UndoLedger(store, event_bus=event_bus)
        self._dispatcher = ToolDispatcher(self._undo, self._config.tool_timeout_seconds)
        self._consumer = StreamConsumer(store, on_chunk)

        self._token = self._new_token()
        self._active_task: asyncio.Task[None] | None = None
        self._turn_chat_id: str | None = None
        self._recursion_depth = 0
        self._auth_retries = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def store(self) -> ChatStore:
        return self._store

    @property
    def undo_ledger(self) -> UndoLedger:
        return self._undo

    @property
    def timer(self) -> WatchdogTimer:
        return self._timer

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    @property
    def recursion_depth(self) -> int:
        return self._recursion_depth

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def start_turn(
        self,
        chat_id: str,
        history: list[Message] | None = None,
        context: list[PromptSnippet] | None = None,
    ) -> None:
        """Run one turn on ``chat_id`` to completion, failure or abort.

        ``history`` is the transcript sent with the first request and
        defaults to the conversation's messages; recursive requests always
        use the current transcript. Failures are recorded on the
        conversation rather than raised.
        """
        conversation = self._store.require(chat_id)
        if self._store.working:
            raise TurnInProgressError("A turn is already in progress")

        self._recursion_depth = 0
        self._turn_chat_id = chat_id
        self._token = token = self._new_token()
        self._set_working(True, chat_id)
        self._emit(ev.TURN_STARTED, chat_id)

        messages = list(history) if history is not None else list(conversation.messages)
        task = asyncio.get_running_loop().create_task(
            self._run_turn(chat_id, messages, list(context or []), token)
        )
        self._active_task = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not token.cancelled or (current is not None and current.cancelling()):
                raise
            logger.info("Turn on chat %s was aborted", chat_id)
            self._emit(ev.TURN_CANCELLED, chat_id)
        except Exception as e:
            logger.exception("Turn on chat %s crashed", chat_id)
            self._surface(
                chat_id, AgentErrorKind.AGENT_ERROR, format_error_description("Agent failed", e),
            )
        finally:
            if self._active_task is task:
                self._active_task = None

    def abort_active_turn(self) -> None:
        """Cancel the running turn and leave the conversation idle.

        Pending tool calls become output-error, every timer is cleared and
        working drops to false before this returns. Later turns use a
        fresh token.
        """
        token = self._token
        self._token = self._new_token()
        token.cancel()
        task = self._active_task
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        """Abort any running turn and release every timer."""
        task = self._active_task
        if task is not None and not task.done():
            self.abort_active_turn()
            await asyncio.gather(task, return_exceptions=True)
        self._timer.clear_all()
        self._set_working(False, self._turn_chat_id)
        logger.debug("Turn controller shut down")

    async def _run_turn(
        self,
        chat_id: str,
        messages: list[Message],
        context: list[PromptSnippet],
        token: CancellationToken,
    ) -> None:
        await self._on_prompt(chat_id, messages)

        while not token.cancelled:
            if self._recursion_depth >= self._config.max_recursion_depth:
                await self._recover(
                    chat_id,
                    RecursionLimitError(self._recursion_depth, self._config.max_recursion_depth),
                )
                return
            self._recursion_depth += 1
            self._arm_watchdog()

            try:
                finished = await self._request(chat_id, messages, context, token)
            except Exception as e:
                self._recursion_depth = max(0, self._recursion_depth - 1)
                if await self._recover(chat_id, e):
                    continue
                return
            self._auth_retries = 0
            self._apply_usage(chat_id, finished)

            if not finished.tool_calls:
                self._complete(chat_id)
                return

            self._ensure_tool_parts(chat_id, finished.tool_calls)
            snapshot = copy.deepcopy(self._store.require(chat_id).messages)
            results = await self._dispatcher.dispatch(
                chat_id,
                finished.tool_calls,
                self._registry,
                snapshot,
                self._timer,
                lambda result: self._apply_result(chat_id, finished.tool_calls, result),
                token,
            )
            if token.cancelled:
                return

            ran = [r for r in results if not r.requires_user_interaction]
            if not ran or len(ran) != len(results):
                # Calls waiting on the user stay input-available.
                self._complete(chat_id)
                return
            messages = list(self._store.require(chat_id).messages)

    async def _request(
        self,
        chat_id: str,
        messages: list[Message],
        context: list[PromptSnippet],
        token: CancellationToken,
    ) -> StreamFinished:
        conversation = self._store.require(chat_id)
        system_prompt = ""
        if self._prompt_builder is not None:
            system_prompt = await self._prompt_builder.build_system_prompt(conversation)
        request = ModelRequest(
            chat_id=chat_id,
            messages=copy.deepcopy(messages),
            system_prompt=system_prompt,
            tools=self._registry.all_schemas(),
            snippets=list(context),
            access_token=self._credentials.access_token if self._credentials else "",
        )
        logger.debug(
            "Model request for chat %s: %d message(s), depth %d",
            chat_id, len(request.messages), self._recursion_depth,
        )
        token.raise_if_cancelled()
        chunks = self._transport.open(request, token)
        return await self._consumer.consume(chat_id, chunks, token)

    async def _on_prompt(self, chat_id: str, messages: list[Message]) -> None:
        if not messages or messages[-1].role is not Role.USER:
            return
        self._emit(ev.PROMPT_TRIGGERED, chat_id)
        if self._title_generator is None:
            return
        if sum(1 for m in messages if m.role is Role.USER) != 1:
            return
        try:
            title = await self._title_generator.generate(copy.deepcopy(messages))
        except Exception as e:
            logger.warning("Title generation for chat %s failed: %s", chat_id, e)
            return
        title = title.strip()
        if not title:
            return

        def _set_title(state: StoreState) -> None:
            conv = state.conversations.get(chat_id)
            if conv is not None:
                conv.title = title

        self._store.mutate(_set_title)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _ensure_tool_parts(self, chat_id: str, calls: list[ToolCall]) -> None:
        """Give every requested call a part, even if the stream never announced it."""
        conversation = self._store.require(chat_id)
        missing = [c for c in calls if conversation.find_tool_call(c.id) is None]
        if not missing:
            return

        def _add(state: StoreState) -> None:
            conv = state.conversations[chat_id]
            message = conv.messages[-1] if conv.messages else None
            if message is None or message.role is not Role.ASSISTANT:
                message = Message(id=new_id("msg"), role=Role.ASSISTANT)
                conv.messages.append(message)
            for call in missing:
                message.parts.append(ToolCallPart(
                    tool_name=call.name,
                    tool_call_id=call.id,
                    state=ToolCallState.INPUT_AVAILABLE,
                    input=dict(call.arguments),
                ))

        self._store.mutate(_add)

    def _apply_result(self, chat_id: str, calls: list[ToolCall], result: ToolCallResult) -> None:
        def _attach(state: StoreState) -> None:
            conv = state.conversations.get(chat_id)
            part = conv.find_tool_call(result.tool_call_id) if conv else None
            if part is None:
                logger.warning("No part for tool call %s", result.tool_call_id)
                return
            if result.success:
                if part.advance(ToolCallState.OUTPUT_AVAILABLE):
                    part.output = result.output
            elif part.advance(ToolCallState.OUTPUT_ERROR):
                part.error_text = result.error.message if result.error else "Tool failed"

        self._store.mutate(_attach)
        tool_name = next((c.name for c in calls if c.id == result.tool_call_id), "")
        self._emit(ev.TOOL_CALL_COMPLETED, chat_id, {
            "tool_name": tool_name,
            "tool_call_id": result.tool_call_id,
            "success": result.success,
            "duration_ms": result.duration_ms,
            "error_message": result.error.message if result.error else None,
        })
        if self._on_tool_result is not None:
            self._on_tool_result(result)

    def _apply_usage(self, chat_id: str, finished: StreamFinished) -> None:
        if finished.usage is None and finished.credits is None:
            return

        def _update(state: StoreState) -> None:
            conv = state.conversations.get(chat_id)
            if conv is not None and finished.usage is not None:
                usage = finished.usage
                conv.usage.input_tokens += usage.input_tokens
                conv.usage.output_tokens += usage.output_tokens
                if usage.input_tokens:
                    conv.usage.used_context_window_size = usage.input_tokens
            if finished.credits is not None:
                state.credits = finished.credits

        self._store.mutate(_update)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _recover(self, chat_id: str, error: Exception) -> bool:
        """Apply the recovery policy for ``error``. Returns True to replay the request."""
        classification = classify(error)
        category = classification.category
        logger.debug("Turn failure on chat %s classified as %s: %s", chat_id, category.value, error)

        if category is ErrorCategory.CANCELLED:
            self._auth_retries = 0
            self._cleanup(chat_id)
            self._emit(ev.TURN_CANCELLED, chat_id)
            return False

        if category is ErrorCategory.AUTH_EXPIRED:
            if self._auth_retries < self._config.max_auth_retries:
                self._auth_retries += 1
                retries_left = self._config.max_auth_retries - self._auth_retries
                if isinstance(error, AuthExpiredError):
                    error.retries_left = retries_left
                logger.info(
                    "Access token rejected on chat %s, refreshing (%d retries left)",
                    chat_id, retries_left,
                )
                try:
                    await self._refresh_credentials()
                except CredentialRefreshError as e:
                    logger.warning("Credential refresh failed: %s", authentication_failed(e, self._auth_retries))
                    self._auth_retries = 0
                    self._surface(chat_id, AgentErrorKind.AUTH_FAILED, AUTH_FAILED_MESSAGE)
                    return False
                except Exception as e:
                    description = authentication_failed(e, self._auth_retries)
                    logger.warning("Credential refresh failed: %s", description)
                    self._auth_retries = 0
                    self._surface(chat_id, AgentErrorKind.AGENT_ERROR, description)
                    return False
                return True
            self._auth_retries = 0
            self._surface(chat_id, AgentErrorKind.AUTH_FAILED, AUTH_FAILED_MESSAGE)
            return False

        self._auth_retries = 0
        if category is ErrorCategory.QUOTA_EXCEEDED:
            cooldown = classification.payload.get("cooldown_minutes")
            paid = bool(classification.payload.get("is_paid_plan", False))
            self._surface(
                chat_id,
                AgentErrorKind.QUOTA_EXCEEDED,
                f"Plan limit exceeded, please wait {cooldown} minutes before your next request.",
                cooldown_minutes=cooldown,
                is_paid_plan=paid,
            )
            self._emit(ev.PLAN_LIMITS_EXCEEDED, chat_id, {
                "cooldown_minutes": cooldown, "is_paid_plan": paid,
            })
        elif category is ErrorCategory.INSUFFICIENT_CREDITS:
            self._surface(chat_id, AgentErrorKind.INSUFFICIENT_CREDITS, str(error) or "Insufficient credits")
            self._emit(ev.CREDITS_INSUFFICIENT, chat_id)
        elif category is ErrorCategory.CONTEXT_LIMIT_EXCEEDED:
            self._surface(chat_id, AgentErrorKind.CONTEXT_LIMIT_EXCEEDED, CONTEXT_LIMIT_MESSAGE)
        elif category is ErrorCategory.RECURSION_LIMIT_EXCEEDED:
            logger.warning("Turn on chat %s stopped: %s", chat_id, error)
            self._surface(
                chat_id,
                AgentErrorKind.RECURSION_LIMIT_EXCEEDED,
                recursion_depth_exceeded(
                    classification.payload["depth"], classification.payload["max_depth"],
                ),
            )
        else:
            logger.warning("Turn on chat %s failed: %s", chat_id, error)
            self._surface(
                chat_id, AgentErrorKind.AGENT_ERROR, format_error_description("Agent failed", error),
            )
        return False

    async def _refresh_credentials(self) -> None:
        if self._credential_provider is None:
            return
        refresh_token = self._credentials.refresh_token if self._credentials else ""
        self._credentials = await self._credential_provider.refresh(refresh_token)

    def _surface(
        self,
        chat_id: str,
        kind: AgentErrorKind,
        message: str,
        *,
        cooldown_minutes: int | None = None,
        is_paid_plan: bool | None = None,
    ) -> None:
        """Record a user-visible error on the conversation and end the turn."""
        error = ConversationError(
            kind=kind,
            message=sanitize(message),
            cooldown_minutes=cooldown_minutes,
            is_paid_plan=is_paid_plan,
        )

        def _set_error(state: StoreState) -> None:
            conv = state.conversations.get(chat_id)
            if conv is not None:
                conv.error = error

        self._store.mutate(_set_error)
        self._cleanup(chat_id)
        self._emit(ev.TURN_FAILED, chat_id, {"kind": kind.value, "message": error.message})

    # ------------------------------------------------------------------
    # Working state and cleanup
    # ------------------------------------------------------------------

    def _new_token(self) -> CancellationToken:
        token = CancellationToken()
        token.on_cancel(self._on_token_cancelled)
        return token

    def _on_token_cancelled(self) -> None:
        chat_id = self._turn_chat_id or self._store.active_chat_id
        if chat_id is not None and self._store.get(chat_id) is not None:
            self._abort_pending_tool_calls(chat_id, ABORTED_MESSAGE)
        self._auth_retries = 0
        self._cleanup(chat_id)

    def _abort_pending_tool_calls(self, chat_id: str, message: str) -> None:
        def _abort(state: StoreState) -> None:
            conv = state.conversations[chat_id]
            for msg in conv.messages:
                for part in msg.tool_call_parts():
                    if part.state.is_terminal:
                        continue
                    part.advance(ToolCallState.OUTPUT_ERROR)
                    part.error_text = message

        self._store.mutate(_abort)

    def _cleanup(self, chat_id: str | None) -> None:
        self._timer.clear_all()
        self._recursion_depth = 0
        self._set_working(False, chat_id)

    def _complete(self, chat_id: str) -> None:
        self._recursion_depth = 0
        self._set_working(False, chat_id)
        self._emit(ev.TURN_COMPLETED, chat_id)

    def _arm_watchdog(self) -> None:
        self._timer.set(
            WorkingTimerKey(),
            self._on_watchdog_expired,
            self._config.watchdog_timeout_seconds,
        )

    def _on_watchdog_expired(self) -> None:
        logger.warning(
            "Turn did not finish within %gs, clearing working state",
            self._config.watchdog_timeout_seconds,
        )
        self._set_working(False, self._turn_chat_id)

    def _set_working(self, working: bool, chat_id: str | None) -> None:
        self._timer.clear(WorkingTimerKey())
        if working:
            self._arm_watchdog()
        if self._store.set_working(working):
            self._emit(ev.WORKING_CHANGED, chat_id or "", {"working": working})

    def _emit(self, event_type: str, chat_id: str, data: dict | None = None) -> None:
        if self._events is None:
            return
        self._events.emit(Event(event_type=event_type, chat_id=chat_id, data=data or {}))

    # ------------------------------------------------------------------
    # Chats and messages
    # ------------------------------------------------------------------

    def create_chat(self) -> Conversation:
        """Create a conversation and make it active."""
        return self._store.add(Conversation.create())

    def switch_chat(self, chat_id: str) -> None:
        """Activate ``chat_id`` and drop every other empty conversation."""
        self._store.require(chat_id)

        def _switch(state: StoreState) -> None:
            state.active_chat_id = chat_id
            for other_id in [
                cid for cid, conv in state.conversations.items()
                if cid != chat_id and not conv.messages
            ]:
                del state.conversations[other_id]

        self._store.mutate(_switch)

    def delete_chat(self, chat_id: str) -> None:
        """Delete a conversation and its undo ledger.

        Deleting the active chat activates another one, or a new empty
        chat when none is left.
        """
        self._store.require(chat_id)
        if self._store.working and self._turn_chat_id == chat_id:
            raise TurnInProgressError("Cannot delete a chat while its turn is running")
        self._undo.drop_chat(chat_id)

        def _delete(state: StoreState) -> None:
            del state.conversations[chat_id]
            if state.active_chat_id == chat_id:
                state.active_chat_id = next(iter(state.conversations), None)

        self._store.mutate(_delete)
        if self._store.active_chat_id is None:
            self.create_chat()

    async def send_user_message(
        self,
        text: str,
        chat_id: str | None = None,
        snippet: PromptSnippet | None = None,
    ) -> Message:
        """Append a user message and run a turn for it."""
        if chat_id is None:
            chat_id = self._store.active_chat_id or self.create_chat().id
        self._store.require(chat_id)
        if self._store.working:
            raise TurnInProgressError("A turn is already in progress")

        message = Message.user(text, snippet)

        def _append(state: StoreState) -> None:
            conv = state.conversations[chat_id]
            conv.messages.append(message)
            conv.error = None

        self._store.mutate(_append)

        context: list[PromptSnippet] = []
        if self._context_supplier is not None:
            try:
                context = await self._context_supplier.snippets(chat_id, text)
            except Exception as e:
                logger.warning("Context supplier failed for chat %s: %s", chat_id, e)
        await self.start_turn(chat_id, None, context)
        return message

    async def retry_last_message(self, chat_id: str | None = None) -> None:
        """Clear the conversation error and run a turn on the current transcript."""
        chat_id = chat_id or self._store.active_chat_id
        if chat_id is None:
            raise ChatNotFoundError("")
        self._store.require(chat_id)

        def _clear(state: StoreState) -> None:
            state.conversations[chat_id].error = None

        self._store.mutate(_clear)
        await self.start_turn(chat_id)

    async def submit_tool_input(self, tool_call_id: str, output: Any, chat_id: str | None = None) -> bool:
        """Answer a user-interaction tool call.

        Resumes the turn once no call of the last assistant message is
        pending. Returns whether a turn was started.
        """
        chat_id = self._require_chat_id(chat_id)
        self._settle_interaction(chat_id, tool_call_id, output=output)
        if self.find_pending_tool_calls(chat_id):
            return False
        await self.start_turn(chat_id)
        return True

    async def cancel_tool_input(self, tool_call_id: str, chat_id: str | None = None) -> bool:
        """Decline a user-interaction tool call and let the model react."""
        chat_id = self._require_chat_id(chat_id)
        self._settle_interaction(chat_id, tool_call_id, error=CANCELLED_INPUT_MESSAGE)
        if self.find_pending_tool_calls(chat_id):
            return False
        await self.start_turn(chat_id)
        return True

    def _settle_interaction(
        self,
        chat_id: str,
        tool_call_id: str,
        *,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        conversation = self._store.require(chat_id)
        if conversation.find_tool_call(tool_call_id) is None:
            raise KeyError(f"No tool call {tool_call_id} in chat {chat_id}")

        def _settle(state: StoreState) -> None:
            part = state.conversations[chat_id].find_tool_call(tool_call_id)
            if error is None:
                if part.advance(ToolCallState.OUTPUT_AVAILABLE):
                    part.output = output
            elif part.advance(ToolCallState.OUTPUT_ERROR):
                part.error_text = error

        self._store.mutate(_settle)

    def _require_chat_id(self, chat_id: str | None) -> str:
        chat_id = chat_id or self._store.active_chat_id
        if chat_id is None:
            raise ChatNotFoundError("")
        self._store.require(chat_id)
        return chat_id

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def find_pending_tool_calls(self, chat_id: str) -> list[dict[str, str]]:
        """Tool calls of the last assistant message still waiting for output."""
        message = self._store.require(chat_id).last_assistant_message()
        if message is None:
            return []
        return [
            {"tool_call_id": part.tool_call_id}
            for part in message.tool_call_parts()
            if part.state is ToolCallState.INPUT_AVAILABLE
        ]

    async def rewind_to(self, chat_id: str, user_message_id: str) -> bool:
        """Undo tool effects after a user message and drop it with everything after."""
        self._store.require(chat_id)
        return await self._undo.rewind_to(chat_id, user_message_id)

    async def rewind_to_latest_user_message(self, chat_id: str) -> Message | None:
        message = self._store.require(chat_id).latest_user_message()
        if message is None:
            return None
        await self._undo.rewind_to(chat_id, message.id)
        return message

    def has_undoable_changes_since_latest_user_message(self, chat_id: str) -> bool:
        message = self._store.require(chat_id).latest_user_message()
        if message is None:
            return False
        return self._undo.has_entries_after(chat_id, message.id)
