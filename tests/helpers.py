"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List

import httpx

from spacechat.ai.client import ClientSettings, GenerationClient
from spacechat.ai.tools import ToolCatalog, ToolSpec
from spacechat.chat.controller import ConversationController
from spacechat.context.models import WindowEntity
from spacechat.services.persistence import InMemoryEntityStore

BASE_URL = "http://backend.test"


def ndjson(*events: Any) -> bytes:
    """Encode events as newline-delimited JSON; strings are emitted verbatim."""

    lines = []
    for event in events:
        lines.append(event if isinstance(event, str) else json.dumps(event, ensure_ascii=False))
    return ("\n".join(lines) + "\n").encode("utf-8")


def text(delta: str) -> Dict[str, Any]:
    return {"type": "text", "content": delta}


def done(title: str = "") -> Dict[str, Any]:
    return {"type": "done", "conversation_title": title}


def tool_use(tool_id: str, name: str, tool_input: Dict[str, Any] | None = None) -> Dict[str, Any]:
    return {"type": "tool_use", "content": {"id": tool_id, "name": name, "input": tool_input or {}}}


class ScriptedBackend:
    """``httpx.MockTransport`` handler replaying one scripted reply per request.

    A reply is either a list of events (sent as a 200 NDJSON body), an
    ``httpx.Response`` or a callable taking the request.
    """

    def __init__(self, *replies: Any) -> None:
        self.replies: List[Any] = list(replies)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            return httpx.Response(500, json={"error": {"message": "unexpected request"}})
        reply = self.replies.pop(0)
        if callable(reply):
            return reply(request)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, content=ndjson(*reply))

    def add(self, *replies: Any) -> None:
        self.replies.extend(replies)

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]


def make_catalog() -> ToolCatalog:
    catalog = ToolCatalog()
    catalog.register("pdf", [ToolSpec("pdf_zoomIn", "Zoom into the PDF"), ToolSpec("pdf_getPage", "Read a page")])
    catalog.register("docs", [ToolSpec("docs_insertText", "Insert text"), ToolSpec("docs_openDocument", "Open")])
    catalog.register("notes", [ToolSpec("notes_append", "Append to a note")])
    return catalog


def make_client(handler: Callable[[httpx.Request], Any], **settings: Any) -> GenerationClient:
    options: Dict[str, Any] = {"base_url": BASE_URL, "auth_token": "secret-token", "model": "test-model"}
    options.update(settings)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GenerationClient(ClientSettings(**options), http_client=http_client, catalog=make_catalog())


def make_controller(
    backend: ScriptedBackend,
    *,
    store: InMemoryEntityStore | None = None,
    **kwargs: Any,
) -> ConversationController:
    return ConversationController(
        "user-1",
        make_client(backend),
        store if store is not None else InMemoryEntityStore(),
        **kwargs,
    )


def pdf_window(window_id: str, *, entity_id: str | None = None, title: str = "Paper.pdf") -> WindowEntity:
    state = {"pdfium": {"entityId": entity_id}} if entity_id else {}
    return WindowEntity(id=window_id, app_type="pdfium", title=title, application_state=state)


def docs_window(window_id: str, *, doc_id: str | None = None, title: str = "Draft") -> WindowEntity:
    docs_state: Dict[str, Any] = {"content": "Hello"}
    if doc_id:
        docs_state["activeDocId"] = doc_id
    return WindowEntity(id=window_id, app_type="docs", title=title, application_state={"docs": docs_state})


def note_window(window_id: str, *, title: str = "Notes") -> WindowEntity:
    return WindowEntity(id=window_id, app_type="notes", title=title)


def entities_of_type(store: InMemoryEntityStore, entity_type: str) -> Iterable[Dict[str, Any]]:
    return [entity for entity in store._entities.values() if entity.get("entityType") == entity_type]
