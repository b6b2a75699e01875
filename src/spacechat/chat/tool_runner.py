"""Executes the tool call a paused turn is waiting on."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Mapping, Protocol

from ..context.registry import WindowRegistry
from ..context.store import ContextStore
from ..context.targeting import WindowTargetResolver
from .controller import ConversationController, TurnResult
from .message_model import ToolUseBlock

LOGGER = logging.getLogger(__name__)

_REFRESH_PREFIXES = ("docs_open", "pdf_open")
_REFRESH_MARKERS = ("create", "edit")


class CommandExecutor(Protocol):
    """Dispatches a tool by name; the result arrives through ``payload["callback"]``."""

    def execute_command(self, name: str, payload: Dict[str, Any]) -> Any:
        ...


def needs_context_refresh(tool_name: str) -> bool:
    """Return True for tools expected to change what a window shows."""

    return tool_name.startswith(_REFRESH_PREFIXES) or any(marker in tool_name for marker in _REFRESH_MARKERS)


def structure_tool_output(tool_name: str, output: Any) -> Dict[str, Any]:
    if isinstance(output, Mapping) and output.get("error"):
        return {
            "status": "error",
            "message": f"Error executing {tool_name}: {output.get('error')}",
            "data": None,
        }
    return {
        "status": "success",
        "message": f"Successfully executed {tool_name}",
        "data": output,
    }


class ToolRunner:
    """Bridges a pending ``tool_use`` block to the command layer.

    The tool input is repaired by the window resolver before dispatch. If the
    user stops the turn while the command is running, its output is dropped;
    the command itself is not interrupted.
    """

    def __init__(
        self,
        controller: ConversationController,
        context_store: ContextStore,
        registry: WindowRegistry,
        executor: CommandExecutor,
        *,
        resolver: WindowTargetResolver | None = None,
    ) -> None:
        self._controller = controller
        self._store = context_store
        self._registry = registry
        self._executor = executor
        self._resolver = resolver or WindowTargetResolver()

    async def run_pending(self, *, model: str | None = None) -> TurnResult | None:
        """Run the pending tool call and continue the conversation with its result.

        Returns the continuation turn, or ``None`` when nothing was pending or
        the turn was stopped while the tool ran.
        """

        controller = self._controller
        message = controller.pending_tool_message()
        if message is None:
            return None
        tool_use = self._next_tool_use(message.tool_uses(), message.thread_id)
        if tool_use is None:
            LOGGER.warning("Pending message %s has no unanswered tool_use block", message.id)
            return None

        turn = controller.turn_id
        context = self._store.snapshot()
        targeting = self._resolver.enhance_tool_input(
            tool_use.name,
            tool_use.input,
            context,
            self._registry.windows,
            self._registry.active_window_id,
            self._registry.active_space_id,
        )
        if targeting.error:
            return await controller.handle_tool_result(
                tool_use.id,
                {"status": "error", "message": targeting.error, "data": None},
                context=context,
                thread_id=message.thread_id,
                model=model,
            )
        if targeting.was_modified:
            LOGGER.info("Adjusted input for %s: %s", tool_use.name, targeting.reason or "spaceId")

        output = await self._execute(tool_use.name, targeting.input, context)
        if output is _STOPPED or controller.turn_id != turn or controller.pending_tool_message_id != message.id:
            LOGGER.info("Tool %s finished after the turn was stopped; dropping its output", tool_use.name)
            return None

        structured = structure_tool_output(tool_use.name, output)
        if needs_context_refresh(tool_use.name):
            window_id = targeting.input.get("windowId")
            if window_id and self._registry.get(window_id) is not None:
                LOGGER.debug("Adding window %s to context after %s", window_id, tool_use.name)
                self._store.add_window_to_context(window_id)
            self._store.mark_refreshed()
            context = self._store.snapshot()

        return await controller.handle_tool_result(
            tool_use.id,
            structured,
            context=context,
            thread_id=message.thread_id,
            model=model,
        )

    async def drive(self, *, model: str | None = None) -> int:
        """Keep running tool calls until the conversation stops asking for them."""

        count = 0
        while self._controller.pending_tool_message_id is not None:
            pending = self._controller.pending_tool_message_id
            await self.run_pending(model=model)
            count += 1
            if self._controller.pending_tool_message_id == pending:
                break
        return count

    async def _execute(self, tool_name: str, tool_input: Mapping[str, Any], context: Any) -> Any:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def callback(output: Any) -> None:
            if future.done():
                LOGGER.debug("Ignoring repeated callback from %s", tool_name)
                return
            future.set_result(output)

        payload = {**tool_input, "callback": _threadsafe(loop, callback), "context": context}
        LOGGER.debug("Executing %s on window %s", tool_name, tool_input.get("windowId"))
        try:
            dispatched = self._executor.execute_command(tool_name, payload)
            if inspect.isawaitable(dispatched):
                await dispatched
        except Exception as exc:
            LOGGER.exception("Command %s failed to dispatch", tool_name)
            if not future.done():
                future.set_result({"error": str(exc) or exc.__class__.__name__})

        stop_event = self._controller.stop_event
        waiter = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        # The stop event may already be cleared again by a newer turn.
        if not future.done():
            future.cancel()
            return _STOPPED
        return future.result()

    def _next_tool_use(self, blocks: list[ToolUseBlock], thread_id: str) -> ToolUseBlock | None:
        answered: set[str] = set()
        for message in self._controller.get_thread_messages(thread_id):
            answered |= message.tool_result_ids()
        for block in blocks:
            if block.id not in answered:
                return block
        return None


_STOPPED = object()


def _threadsafe(loop: asyncio.AbstractEventLoop, callback: Callable[[Any], None]) -> Callable[[Any], None]:
    """Allow command implementations to report from worker threads."""

    def _invoke(output: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(output)
        else:
            loop.call_soon_threadsafe(callback, output)

    return _invoke


__all__ = ["CommandExecutor", "ToolRunner", "needs_context_refresh", "structure_tool_output"]
