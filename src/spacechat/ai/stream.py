"""Cancellable streaming session for the generation endpoint.

The endpoint answers with newline-delimited JSON events::

    {"type": "text", "content": "Hel"}
    {"type": "tool_use", "content": {"id": "...", "name": "pdf_zoomIn", "input": {}}}
    {"type": "done", "conversation_title": "Greeting"}

Only ``text``, ``tool_use``, ``done`` and ``error`` drive callbacks; the
remaining Anthropic-style advisory events are tolerated and ignored. A
``tool_use`` event always ends the session because the model pauses for the
tool result, which is sent on a new session.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, TypeVar

import httpx

from .errors import ProviderOverloadedError, StreamError, StreamEventError, StreamTimeoutError, TransportError

LOGGER = logging.getLogger(__name__)

OVERLOADED_MARKER = "overloaded_error"
FALLBACK_ERROR_MESSAGE = "Failed to process query"
ADVISORY_EVENTS = frozenset(
    {
        "message_start",
        "content_block_start",
        "content_block_stop",
        "message_delta",
        "message_stop",
        "ping",
    }
)

T = TypeVar("T")
MaybeAwaitable = Awaitable[None] | None


@dataclass(slots=True)
class StreamHandlers:
    """Callbacks invoked by a session; each may be sync or async."""

    on_text: Callable[[str, str], MaybeAwaitable]
    on_done: Callable[[str, str], MaybeAwaitable]
    on_tool_use: Callable[[Mapping[str, Any]], MaybeAwaitable] | None = None
    on_error: Callable[[Exception], MaybeAwaitable] | None = None


class StreamOutcome(str, Enum):
    DONE = "done"
    TOOL_USE = "tool_use"
    ERROR = "error"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class StreamResult:
    outcome: StreamOutcome
    full_response: str = ""
    tool_use: Mapping[str, Any] | None = None
    conversation_title: str | None = None
    error: Exception | None = None


class _Sentinel(Enum):
    ABORTED = "aborted"
    EXHAUSTED = "exhausted"


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


async def _await_or_abort(awaitable: Awaitable[T], abort: asyncio.Event) -> T | _Sentinel:
    """Race ``awaitable`` against ``abort``; the loser is cancelled."""

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if abort.is_set():
        if task.done() and not task.cancelled() and task.exception() is not None:
            LOGGER.debug("Discarding read error raised during abort: %s", task.exception())
        elif not task.done():
            try:
                await task
            except (asyncio.CancelledError, Exception):
                LOGGER.debug("Reader cancel during abort (expected)")
        return _Sentinel.ABORTED
    try:
        return task.result()
    except StopAsyncIteration:
        return _Sentinel.EXHAUSTED


class EventStreamParser:
    """Splits raw chunks into lines and turns each line into callbacks."""

    def __init__(self, handlers: StreamHandlers, *, log_prefix: str = "stream") -> None:
        self._handlers = handlers
        self._log_prefix = log_prefix
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.full_response = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        """Return the complete, non-blank lines made available by ``chunk``."""

        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> list[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [tail] if tail.strip() else []

    async def handle_line(self, line: str) -> StreamResult | None:
        """Process one line; return a result when it ends the stream."""

        if OVERLOADED_MARKER in line:
            LOGGER.warning("[%s] Provider overloaded: %s", self._log_prefix, line.strip()[:200])
            return await self._fail(ProviderOverloadedError())

        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            LOGGER.warning("[%s] Skipping malformed stream line (%s): %r", self._log_prefix, exc, line[:200])
            return None
        if not isinstance(data, Mapping):
            LOGGER.warning("[%s] Skipping non-object stream line: %r", self._log_prefix, line[:200])
            return None

        event_type = data.get("type")
        handlers = self._handlers
        try:
            if event_type == "text":
                delta = data.get("content")
                delta = "" if delta is None else str(delta)
                self.full_response += delta
                await _maybe_await(handlers.on_text(delta, self.full_response))
                return None
            if event_type == "tool_use":
                tool_use = data.get("content")
                tool_use = dict(tool_use) if isinstance(tool_use, Mapping) else {}
                LOGGER.debug("[%s] Tool use requested: %s", self._log_prefix, tool_use.get("name"))
                if handlers.on_tool_use is not None:
                    await _maybe_await(handlers.on_tool_use(tool_use))
                return StreamResult(StreamOutcome.TOOL_USE, self.full_response, tool_use=tool_use)
            if event_type == "done":
                title = str(data.get("conversation_title") or "")
                await _maybe_await(handlers.on_done(self.full_response, title))
                return StreamResult(StreamOutcome.DONE, self.full_response, conversation_title=title)
        except Exception as exc:
            LOGGER.exception("[%s] Stream handler failed for %s event", self._log_prefix, event_type)
            return await self._fail(exc)

        if event_type == "error":
            message = data.get("message")
            if not message and isinstance(data.get("error"), Mapping):
                message = data["error"].get("message")
            return await self._fail(StreamEventError(str(message or "Unknown error in stream")))
        if event_type in ADVISORY_EVENTS:
            LOGGER.debug("[%s] %s", self._log_prefix, event_type)
        else:
            LOGGER.debug("[%s] Unknown event type: %s", self._log_prefix, event_type)
        return None

    async def _fail(self, error: Exception) -> StreamResult:
        await notify_error(self._handlers, error, log_prefix=self._log_prefix)
        return StreamResult(StreamOutcome.ERROR, self.full_response, error=error)


async def notify_error(handlers: StreamHandlers, error: Exception, *, log_prefix: str = "stream") -> None:
    if handlers.on_error is None:
        return
    try:
        await _maybe_await(handlers.on_error(error))
    except Exception:
        LOGGER.exception("[%s] Error handler failed", log_prefix)


async def consume_event_stream(
    chunks: AsyncIterator[bytes],
    handlers: StreamHandlers,
    *,
    abort: asyncio.Event,
    log_prefix: str = "stream",
) -> StreamResult:
    """Read ``chunks`` until a terminal event, exhaustion or ``abort``."""

    parser = EventStreamParser(handlers, log_prefix=log_prefix)
    iterator = chunks.__aiter__()

    def _cancelled() -> StreamResult:
        LOGGER.debug("[%s] Stream aborted by user", log_prefix)
        return StreamResult(StreamOutcome.CANCELLED, parser.full_response)

    while True:
        if abort.is_set():
            return _cancelled()
        chunk = await _await_or_abort(iterator.__anext__(), abort)
        if chunk is _Sentinel.ABORTED:
            return _cancelled()
        if chunk is _Sentinel.EXHAUSTED:
            break
        for line in parser.feed(chunk):
            if abort.is_set():
                return _cancelled()
            result = await parser.handle_line(line)
            if result is not None:
                return result

    for line in parser.flush():
        result = await parser.handle_line(line)
        if result is not None:
            return result
    LOGGER.debug("[%s] Stream ended without a terminal event", log_prefix)
    return StreamResult(StreamOutcome.EXHAUSTED, parser.full_response)


class StreamSession:
    """One request/response exchange with the generation endpoint."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: str,
        body: Mapping[str, Any],
        handlers: StreamHandlers,
        *,
        headers: Mapping[str, str] | None = None,
        log_prefix: str = "stream",
    ) -> None:
        self._client = http_client
        self._url = url
        self._body = dict(body)
        self._handlers = handlers
        self._headers = dict(headers or {})
        self._log_prefix = log_prefix
        self._abort = asyncio.Event()
        self._started = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def body(self) -> Mapping[str, Any]:
        return self._body

    @property
    def cancelled(self) -> bool:
        return self._abort.is_set()

    def cancel(self) -> None:
        """Stop reading as soon as possible; safe to call repeatedly."""

        if not self._abort.is_set():
            LOGGER.debug("[%s] Cancelling stream", self._log_prefix)
        self._abort.set()

    async def run(self) -> StreamResult:
        """Send the request and dispatch events; errors go to ``on_error``."""

        if self._started:
            raise RuntimeError("StreamSession.run() may only be called once")
        self._started = True
        response: httpx.Response | None = None
        try:
            request = self._client.build_request("POST", self._url, json=self._body, headers=self._headers)
            sent = await _await_or_abort(self._client.send(request, stream=True), self._abort)
            if sent is _Sentinel.ABORTED:
                return StreamResult(StreamOutcome.CANCELLED)
            response = sent
            if response.status_code >= 400:
                raise TransportError(await _error_message(response), status_code=response.status_code)
            return await consume_event_stream(
                response.aiter_bytes(),
                self._handlers,
                abort=self._abort,
                log_prefix=self._log_prefix,
            )
        except StreamError as exc:
            return await self._fail(exc)
        except httpx.TimeoutException as exc:
            return await self._fail(StreamTimeoutError(f"Request timed out: {exc}"))
        except httpx.HTTPError as exc:
            return await self._fail(TransportError(str(exc) or exc.__class__.__name__))
        finally:
            if response is not None:
                try:
                    await response.aclose()
                except Exception:
                    LOGGER.debug("[%s] Reader cancel while closing (expected)", self._log_prefix, exc_info=True)

    async def _fail(self, error: Exception) -> StreamResult:
        if self._abort.is_set():
            LOGGER.debug("[%s] Ignoring error after cancellation: %s", self._log_prefix, error)
            return StreamResult(StreamOutcome.CANCELLED)
        LOGGER.error("[%s] Stream failed: %s", self._log_prefix, error)
        await notify_error(self._handlers, error, log_prefix=self._log_prefix)
        return StreamResult(StreamOutcome.ERROR, error=error)


async def _error_message(response: httpx.Response) -> str:
    try:
        raw = await response.aread()
        payload = json.loads(raw)
    except (httpx.HTTPError, ValueError):
        return FALLBACK_ERROR_MESSAGE
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if payload.get("message"):
            return str(payload["message"])
    return FALLBACK_ERROR_MESSAGE


__all__ = [
    "ADVISORY_EVENTS",
    "EventStreamParser",
    "OVERLOADED_MARKER",
    "StreamHandlers",
    "StreamOutcome",
    "StreamResult",
    "StreamSession",
    "consume_event_stream",
]
