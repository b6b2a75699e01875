"""Turn state machine for one chat surface.

A turn moves ``idle → sending → streaming`` and then either back to ``idle``
(``done``), into ``tool_pending`` (the model asked for a tool; the tool
result starts a new turn on the same thread), through ``error`` or through
``stopped``. Only one turn may be in flight per controller; a second
``send_message`` while one is sending or streaming is ignored.

Callbacks from a stream are tagged with the turn that opened it. Once a turn
is stopped, or superseded by a newer one, its late callbacks are discarded.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Sequence

from ..ai.client import GenerationClient
from ..ai.errors import classify_error
from ..ai.stream import StreamHandlers, StreamOutcome, StreamResult, StreamSession
from ..ai.tokens import BudgetReport, ContextBudget
from ..context.models import SpaceContext
from ..context.registry import WindowRegistry
from ..context.targeting import generate_context_description
from ..services.persistence import EntityStore
from .event_log import ChatEventLogger
from .message_model import (
    STOPPED_PLACEHOLDER,
    ChatMode,
    ContentBlock,
    Message,
    MessageFactory,
    TextBlock,
    Thread,
    ToolResultBlock,
    ToolUseBlock,
    default_thread_name,
    normalize_tool_result,
    push_tool_use,
    to_history,
)

LOGGER = logging.getLogger(__name__)

ThreadSelectionCallback = Callable[[Mapping[str, str]], Any]


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass(slots=True)
class TurnResult:
    """What a call to :meth:`ConversationController.send_message` produced."""

    user_message: Message
    assistant_message: Message
    stream: StreamResult | None = None


class ConversationController:
    """Owns threads, messages and the in-flight turn for one user."""

    def __init__(
        self,
        user_id: str,
        client: GenerationClient,
        entity_store: EntityStore,
        *,
        registry: WindowRegistry | None = None,
        budget: ContextBudget | None = None,
        event_logger: ChatEventLogger | None = None,
        on_thread_selection: ThreadSelectionCallback | None = None,
    ) -> None:
        self._factory = MessageFactory(user_id)
        self._client = client
        self._entity_store = entity_store
        self._registry = registry
        self._budget = budget or ContextBudget()
        self._event_logger = event_logger or ChatEventLogger(enabled=False)
        self._on_thread_selection = on_thread_selection

        self.threads: Dict[str, Thread] = {}
        self.messages: Dict[str, Message] = {}
        self.current_thread_ids: Dict[str, str] = {}
        self.initialized = False

        self.state = TurnState.IDLE
        self.state_history: Deque[TurnState] = deque([TurnState.IDLE], maxlen=32)
        self.is_processing = False
        self.is_streaming = False
        self.is_generating = False
        self.pending_tool_message_id: str | None = None
        self.current_streaming_message_id: str | None = None
        self.last_error: str | None = None
        self.last_budget: BudgetReport | None = None

        self._turn = 0
        self._session: StreamSession | None = None
        self._event_log: Any = None
        self._stop_event = asyncio.Event()

    @property
    def user_id(self) -> str:
        return self._factory.user_id

    @property
    def stop_event(self) -> asyncio.Event:
        """Set when the user stops the current turn; cleared by the next turn."""

        return self._stop_event

    @property
    def turn_id(self) -> int:
        return self._turn

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------
    async def initialize(self, saved_thread_ids: Mapping[str, str] | None = None) -> None:
        """Load the user's threads and the messages of each saved current thread."""

        if self.initialized:
            return
        records = await self._entity_store.query_entities({"entityType": "Thread", "user_id": self.user_id})
        for record in records:
            thread = Thread.from_entity(record)
            self.threads[thread.id] = thread

        restored: Dict[str, str] = {}
        for mode, thread_id in (saved_thread_ids or {}).items():
            if not thread_id or thread_id not in self.threads:
                continue
            try:
                await self.fetch_messages(thread_id)
            except Exception:
                LOGGER.exception("Failed to load messages for saved thread %s (mode %s)", thread_id, mode)
            restored[mode] = thread_id
        self.current_thread_ids.update(restored)
        self.initialized = True
        LOGGER.info("Loaded %d thread(s); restored %d current thread(s)", len(self.threads), len(restored))

    def create_thread(self, mode: ChatMode) -> str:
        thread = self._factory.thread(mode, default_thread_name(mode))
        self.threads[thread.id] = thread
        self._select_thread(mode, thread.id)
        return thread.id

    async def set_current_thread(self, mode: ChatMode, thread_id: str) -> None:
        await self.fetch_messages(thread_id)
        self._select_thread(mode, thread_id)

    async def fetch_messages(self, thread_id: str) -> List[Message]:
        records = await self._entity_store.query_entities({"entityType": "Message", "skeleton.thread_id": thread_id})
        messages = [Message.from_entity(record) for record in records]
        for message in messages:
            self.messages[message.id] = message
        return messages

    def get_thread_messages(self, thread_id: str) -> List[Message]:
        """Return the thread's messages in order, skipping ids not loaded."""

        thread = self.threads.get(thread_id)
        if thread is None:
            return []
        return [self.messages[message_id] for message_id in thread.message_ids if message_id in self.messages]

    def pending_tool_message(self) -> Message | None:
        if self.pending_tool_message_id is None:
            return None
        return self.messages.get(self.pending_tool_message_id)

    async def persist_entities(self, entities: Sequence[Message | Thread]) -> None:
        try:
            await self._entity_store.batch_upsert([entity.to_entity() for entity in entities])
        except Exception:
            LOGGER.error("Failed to persist %d entit(y/ies)", len(entities), exc_info=True)
            raise

    def context_description(self, context: SpaceContext) -> str | None:
        if self._registry is None:
            return None
        return generate_context_description(context, self._registry.windows, self._registry.active_window_id)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def send_message(
        self,
        content: str | ContentBlock,
        *,
        thread_id: str,
        mode: ChatMode,
        context: SpaceContext,
        model: str | None = None,
    ) -> TurnResult | None:
        """Start a turn; returns ``None`` when the message was not sent."""

        block = TextBlock(text=content) if isinstance(content, str) else content
        if isinstance(block, TextBlock) and not block.text.strip():
            return None
        if self.is_processing:
            LOGGER.info("A turn is already in flight; ignoring new message")
            return None

        self._turn += 1
        turn = self._turn
        self._stop_event.clear()
        self.is_processing = True
        self.is_generating = True
        self.last_error = None
        self._set_state(TurnState.SENDING)

        session: StreamSession | None = None
        result: TurnResult | None = None
        try:
            thread = self.threads.get(thread_id)
            if thread is None:
                LOGGER.debug("Unknown thread %s; creating one for mode %s", thread_id, mode)
                thread = self._factory.thread(mode, f"New {mode} thread")
                self.threads[thread.id] = thread
            user_message = self._factory.message([block], "user", thread.id)
            assistant = self._factory.assistant([], thread.id)
            thread.link(user_message.id)
            self.messages[user_message.id] = user_message
            self.messages[assistant.id] = assistant
            self._select_thread(mode, thread.id)
            result = TurnResult(user_message, assistant)
            await self.persist_entities([user_message, assistant, thread])
            if turn != self._turn:
                return result

            history = to_history(self.get_thread_messages(thread.id))
            query = block.text if isinstance(block, TextBlock) else block.content
            history, report = self._budget.fit(context.as_payload(), history, query)
            self.last_budget = report

            self._event_log = self._event_logger.start_turn(
                run_id=assistant.id,
                thread_id=thread.id,
                mode=mode,
                kind=block.type,
                query=query,
                context=context.as_payload(),
                context_description=self.context_description(context),
                budget=report.as_dict(),
                history=history,
            )

            self.is_streaming = True
            self.current_streaming_message_id = assistant.id
            self._set_state(TurnState.STREAMING)
            session = self._client.open_stream(
                block,
                context,
                history,
                self._handlers(turn, thread, assistant),
                model=model,
                log_prefix="toolResult" if isinstance(block, ToolResultBlock) else "sendMessage",
            )
            self._session = session
            result.stream = await session.run()
            if result.stream.outcome is StreamOutcome.EXHAUSTED and turn == self._turn:
                LOGGER.warning("Stream ended without a done event; finalizing message %s", assistant.id)
                await self._finish(thread, assistant, None)
            return result
        except Exception as exc:
            LOGGER.exception("Turn failed before the stream completed")
            if turn == self._turn and result is not None:
                assistant = result.assistant_message
                await self._fail(exc, thread=self.threads.get(assistant.thread_id), assistant=assistant)
            return result
        finally:
            if self._session is session:
                self._session = None
            if turn == self._turn:
                self.is_processing = False
                self.is_streaming = False
                if not self.is_generating:
                    self.current_streaming_message_id = None
                if self.state in (TurnState.SENDING, TurnState.STREAMING, TurnState.ERROR):
                    self._set_state(TurnState.IDLE)

    async def stop_stream(self) -> Message | None:
        """Abort the in-flight turn, keeping whatever partial content exists.

        Returns the finalized message, if any.
        """

        session = self._session
        if session is not None:
            session.cancel()
        self._stop_event.set()

        pending_id = self.pending_tool_message_id
        target_id = pending_id or self.current_streaming_message_id
        was_generating = self.is_generating
        event_log = self._event_log

        # Late callbacks of the stopped turn must not touch state.
        self._turn += 1
        self._set_state(TurnState.STOPPED)
        self.is_streaming = False
        self.is_processing = False
        self.is_generating = False
        self.pending_tool_message_id = None
        self.current_streaming_message_id = None
        self._session = None
        self._event_log = None
        self._set_state(TurnState.IDLE)

        if not target_id or not was_generating:
            return None
        message = self.messages.get(target_id)
        if message is None:
            return None

        if pending_id:
            answered = self._answered_tool_ids(message.thread_id)
            for block in message.tool_uses():
                if block.id not in answered:
                    LOGGER.debug("Removing incomplete tool_use %s from %s", block.id, message.id)
            message.content = [
                block
                for block in message.content
                if not (isinstance(block, ToolUseBlock) and block.id not in answered)
            ]
        if not message.content:
            message.content = [TextBlock(text=STOPPED_PLACEHOLDER)]

        entities: List[Message | Thread] = [message]
        thread = self.threads.get(message.thread_id)
        if thread is not None:
            thread.link(message.id)
            entities.append(thread)
        if event_log is not None:
            event_log.log_stopped(response_text=message.text)
        await self.persist_entities(entities)
        LOGGER.info("Stopped generation; finalized message %s", message.id)
        return message

    async def handle_tool_result(
        self,
        tool_use_id: str,
        payload: Any,
        *,
        context: SpaceContext,
        thread_id: str,
        model: str | None = None,
    ) -> TurnResult | None:
        """Send a tool's output back to the model as a new turn on ``thread_id``."""

        thread = self.threads.get(thread_id)
        if thread is None:
            raise KeyError(f"Unknown thread: {thread_id}")
        if self.is_processing or self.state is not TurnState.TOOL_PENDING:
            LOGGER.info(
                "Ignoring result for %s: no turn is waiting on a tool (state %s)", tool_use_id, self.state.value
            )
            return None
        tool_name = self._tool_name(tool_use_id)

        self.pending_tool_message_id = None
        self.is_processing = False
        self.is_generating = True

        envelope = normalize_tool_result(payload)
        payload_name = payload.get("name") if isinstance(payload, Mapping) else None
        if any(
            isinstance(name, str) and name.startswith("docs_")
            for name in (tool_use_id, tool_name, payload_name)
        ):
            context = context.with_refresh(int(time.time() * 1000))

        return await self.send_message(
            ToolResultBlock(tool_use_id=tool_use_id, content=json.dumps(envelope, default=str)),
            thread_id=thread.id,
            mode=thread.mode,
            context=context,
            model=model,
        )

    def dump_state(self) -> Dict[str, Any]:
        """Plain-dict snapshot of the controller for debugging."""

        return {
            "state": self.state.value,
            "state_history": [state.value for state in self.state_history],
            "turn": self._turn,
            "is_processing": self.is_processing,
            "is_streaming": self.is_streaming,
            "is_generating": self.is_generating,
            "pending_tool_message_id": self.pending_tool_message_id,
            "current_streaming_message_id": self.current_streaming_message_id,
            "current_thread_ids": dict(self.current_thread_ids),
            "thread_count": len(self.threads),
            "message_count": len(self.messages),
            "stream_open": self._session is not None,
            "last_error": self.last_error,
            "budget": self.last_budget.as_dict() if self.last_budget is not None else None,
        }

    # ------------------------------------------------------------------
    # Stream callbacks
    # ------------------------------------------------------------------
    def _handlers(self, turn: int, thread: Thread, assistant: Message) -> StreamHandlers:
        def on_text(delta: str, full_response: str) -> None:
            if turn != self._turn:
                return
            block = assistant.text_block()
            if block is None:
                assistant.content.insert(0, TextBlock(text=full_response))
            else:
                block.text = full_response
            thread.link(assistant.id)
            self.is_generating = True
            self.current_streaming_message_id = assistant.id

        async def on_tool_use(tool_use: Mapping[str, Any]) -> None:
            if turn != self._turn:
                return
            push_tool_use(assistant, tool_use)
            thread.link(assistant.id)
            self.pending_tool_message_id = assistant.id
            self.is_streaming = False
            self.is_generating = True
            self.current_streaming_message_id = None
            self._set_state(TurnState.TOOL_PENDING)
            if self._event_log is not None:
                self._event_log.log_tool_use(tool_use, message_id=assistant.id)
            await self.persist_entities([assistant, thread])

        async def on_done(full_response: str, conversation_title: str) -> None:
            if turn != self._turn:
                return
            await self._finish(thread, assistant, conversation_title)

        async def on_error(error: Exception) -> None:
            if turn != self._turn:
                return
            await self._fail(error, thread=thread, assistant=assistant)

        return StreamHandlers(on_text=on_text, on_done=on_done, on_tool_use=on_tool_use, on_error=on_error)

    async def _finish(self, thread: Thread, assistant: Message, conversation_title: str | None) -> None:
        if conversation_title:
            thread.name = conversation_title
        if assistant.content:
            thread.link(assistant.id)
        if self._event_log is not None:
            self._event_log.log_completion(
                response_text=assistant.text,
                conversation_title=conversation_title,
                tool_call_count=len(assistant.tool_uses()),
            )
        if not self.pending_tool_message_id:
            self.is_generating = False
            self.current_streaming_message_id = None
            self._set_state(TurnState.IDLE)
        await self.persist_entities([assistant, thread])

    async def _fail(self, error: BaseException, *, thread: Thread | None, assistant: Message) -> None:
        classification = classify_error(error)
        LOGGER.error("Turn failed (%s): %s", classification.kind, error)
        error_message = self._factory.error(classification.user_message, assistant.thread_id)
        self.messages[error_message.id] = error_message
        self.last_error = classification.user_message
        self.is_generating = False
        self.is_streaming = False
        self.pending_tool_message_id = None
        self.current_streaming_message_id = None
        self._set_state(TurnState.ERROR)
        if self._event_log is not None:
            self._event_log.log_failure(message=str(error), details={"kind": classification.kind})

        entities: List[Message | Thread] = []
        if assistant.content:
            entities.append(assistant)
            if thread is not None:
                thread.link(assistant.id)
        if thread is not None:
            entities.append(thread)
        if entities:
            try:
                await self.persist_entities(entities)
            except Exception as exc:
                LOGGER.warning("Could not persist partial turn after failure: %s", exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_state(self, state: TurnState) -> None:
        if state is self.state:
            return
        LOGGER.debug("Turn state %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_history.append(state)

    def _select_thread(self, mode: str, thread_id: str) -> None:
        if self.current_thread_ids.get(mode) == thread_id:
            return
        self.current_thread_ids[mode] = thread_id
        callback = self._on_thread_selection
        if callback is None:
            return
        try:
            result = callback(dict(self.current_thread_ids))
        except Exception:
            LOGGER.exception("Thread selection callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_selection_failure)

    def _answered_tool_ids(self, thread_id: str) -> set[str]:
        answered: set[str] = set()
        for message in self.get_thread_messages(thread_id):
            answered |= message.tool_result_ids()
        return answered

    def _tool_name(self, tool_use_id: str) -> str | None:
        candidates = []
        if self.pending_tool_message_id and self.pending_tool_message_id in self.messages:
            candidates.append(self.messages[self.pending_tool_message_id])
        candidates.extend(reversed(list(self.messages.values())))
        for message in candidates:
            for block in message.tool_uses():
                if block.id == tool_use_id:
                    return block.name
        return None


def _log_selection_failure(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        LOGGER.error("Failed to persist thread selection: %s", error)


__all__ = ["ConversationController", "TurnResult", "TurnState"]
