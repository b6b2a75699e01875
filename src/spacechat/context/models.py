"""Window registry entries and the normalized context records built from them."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Union

LOGGER = logging.getLogger(__name__)

PDF_APP_TYPE = "PDF"
DOCS_APP_TYPE = "docs"
NOTES_APP_TYPE = "notes"

_PDF_ALIASES = frozenset({"pdf", "pdfium"})
_DOCS_ALIASES = frozenset({"docs", "doc"})
_NOTES_ALIASES = frozenset({"notes", "note"})


@dataclass(slots=True, frozen=True)
class EntityRecord:
    """Generic entity known to the entity index (file, document, note, ...)."""

    id: str
    name: str
    entity_type: str
    skeleton: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class WindowEntity:
    """Read-only view of a window owned by the UI-state registry."""

    id: str
    app_type: str = ""
    title: str = ""
    application_state: Mapping[str, Any] = field(default_factory=dict)
    entity: EntityRecord | None = None
    type: str = "window"

    def app_state(self, key: str) -> Mapping[str, Any]:
        value = self.application_state.get(key) if self.application_state else None
        return value if isinstance(value, Mapping) else {}

    @property
    def active_doc_id(self) -> str | None:
        return self.app_state("docs").get("activeDocId") or None

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        if self.entity is not None and self.entity.name:
            return self.entity.name
        return "Untitled"


@dataclass(slots=True, frozen=True)
class PDFWindowContent:
    window_id: str
    stable_id: str
    title: str
    entity_id: str | None = None
    is_active: bool = False
    app_type: str = PDF_APP_TYPE

    def as_payload(self) -> Dict[str, Any]:
        payload = _base_payload(self)
        payload["entityId"] = self.entity_id
        return payload


@dataclass(slots=True, frozen=True)
class DocsWindowContent:
    window_id: str
    stable_id: str
    title: str
    doc_id: str = ""
    content: str = ""
    content_hash: str = ""
    screen: str = "doc"
    is_active: bool = False
    app_type: str = DOCS_APP_TYPE

    def as_payload(self) -> Dict[str, Any]:
        payload = _base_payload(self)
        payload.update(
            {
                "screen": self.screen,
                "docId": self.doc_id,
                "content": self.content,
                "contentHash": self.content_hash,
            }
        )
        return payload


@dataclass(slots=True, frozen=True)
class NoteWindowContent:
    window_id: str
    stable_id: str
    title: str
    note_id: str | None = None
    content: str | None = None
    content_hash: str | None = None
    is_active: bool = False
    app_type: str = NOTES_APP_TYPE

    def as_payload(self) -> Dict[str, Any]:
        payload = _base_payload(self)
        if self.note_id is not None:
            payload["noteId"] = self.note_id
        if self.content is not None:
            payload["content"] = self.content
            payload["contentHash"] = self.content_hash or ""
        return payload


@dataclass(slots=True, frozen=True)
class GenericWindowContent:
    window_id: str
    stable_id: str
    title: str
    app_type: str = "unknown"
    is_active: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict)

    def as_payload(self) -> Dict[str, Any]:
        payload = dict(self.extra)
        payload.update(_base_payload(self))
        return payload


WindowContent = Union[PDFWindowContent, DocsWindowContent, NoteWindowContent, GenericWindowContent]


@dataclass(slots=True)
class SpaceContext:
    """Aggregate sent to the generation endpoint for one space."""

    space_id: str = ""
    window_contents: Dict[str, WindowContent] = field(default_factory=dict)
    current_selection: Mapping[str, Any] | None = None
    refresh_timestamp: int | None = None

    def copy(self) -> "SpaceContext":
        return SpaceContext(
            space_id=self.space_id,
            window_contents=dict(self.window_contents),
            current_selection=self.current_selection,
            refresh_timestamp=self.refresh_timestamp,
        )

    def with_refresh(self, timestamp: int) -> "SpaceContext":
        refreshed = self.copy()
        refreshed.refresh_timestamp = timestamp
        return refreshed

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "spaceId": self.space_id,
            "windowContents": {
                window_id: content.as_payload() for window_id, content in self.window_contents.items()
            },
        }
        if self.current_selection is not None:
            payload["currentSelection"] = dict(self.current_selection)
        if self.refresh_timestamp is not None:
            payload["_refreshTimestamp"] = self.refresh_timestamp
        return payload


def _base_payload(content: WindowContent) -> Dict[str, Any]:
    return {
        "appType": content.app_type,
        "windowId": content.window_id,
        "stableId": content.stable_id,
        "title": content.title,
        "isActive": content.is_active,
    }


def normalize_app_type(app_type: str | None) -> str:
    """Return the canonical tag for ``app_type`` (``PDF``, ``docs``, ``notes`` or passthrough)."""

    lowered = (app_type or "").strip().lower()
    if lowered in _PDF_ALIASES:
        return PDF_APP_TYPE
    if lowered in _DOCS_ALIASES:
        return DOCS_APP_TYPE
    if lowered in _NOTES_ALIASES:
        return NOTES_APP_TYPE
    return app_type or "unknown"


def classify_window(window: WindowEntity) -> str:
    """Detect a window's normalized app type from its type, app state and title."""

    app_type = normalize_app_type(window.app_type)
    if app_type == PDF_APP_TYPE or window.app_state("pdfium") or ".pdf" in (window.title or "").lower():
        return PDF_APP_TYPE
    if app_type == DOCS_APP_TYPE or window.app_state("docs"):
        return DOCS_APP_TYPE
    if app_type == NOTES_APP_TYPE:
        return NOTES_APP_TYPE
    return app_type


def format_window_type(app_type: str | None) -> str:
    """Human readable label for an app type."""

    if not app_type:
        return "Unknown"
    lowered = app_type.lower()
    if lowered in _PDF_ALIASES:
        return "PDF"
    if lowered in _DOCS_ALIASES:
        return "Document"
    if lowered in _NOTES_ALIASES:
        return "Note"
    if lowered == "browser":
        return "Browser"
    return app_type[:1].upper() + app_type[1:].lower()


def content_hash(content: str) -> str:
    if not content:
        return ""
    return hashlib.sha1(content.encode("utf-8")).hexdigest()[:16]


def pdf_entity_id(window: WindowEntity) -> str | None:
    entity_id = window.app_state("pdfium").get("entityId")
    if entity_id:
        return str(entity_id)
    if window.entity is not None and window.entity.id:
        return window.entity.id
    return None


def create_window_content(window: WindowEntity, *, is_active: bool = False) -> WindowContent:
    """Normalize a registry window into its context record."""

    window_id = window.id
    title = window.display_title
    app_type = classify_window(window)

    if app_type == PDF_APP_TYPE:
        entity_id = pdf_entity_id(window)
        LOGGER.debug("Context entry for PDF window %s (entity=%s)", window_id, entity_id)
        return PDFWindowContent(
            window_id=window_id,
            stable_id=f"pdf-{entity_id or window_id}",
            title=title,
            entity_id=entity_id,
            is_active=is_active,
        )

    if app_type == DOCS_APP_TYPE:
        docs_state = window.app_state("docs")
        doc_id = str(docs_state.get("activeDocId") or "")
        body = str(docs_state.get("content") or "")
        return DocsWindowContent(
            window_id=window_id,
            stable_id=f"docs-{doc_id or window_id}",
            title=title,
            doc_id=doc_id,
            content=body,
            content_hash=content_hash(body),
            is_active=is_active,
        )

    if app_type == NOTES_APP_TYPE:
        notes_state = window.app_state("notes")
        note_id = notes_state.get("activeNoteId")
        body = notes_state.get("content")
        return NoteWindowContent(
            window_id=window_id,
            stable_id=f"notes-{note_id or window_id}",
            title=title,
            note_id=str(note_id) if note_id else None,
            content=str(body) if body is not None else None,
            content_hash=content_hash(str(body)) if body else None,
            is_active=is_active,
        )

    LOGGER.debug("Unknown window type %s for window %s", app_type, window_id)
    return GenericWindowContent(
        window_id=window_id,
        stable_id=f"window-{window_id}",
        title=title,
        app_type=app_type or "unknown",
        is_active=is_active,
    )


def window_from_entity(entity: EntityRecord) -> WindowEntity:
    """Build a pseudo-window so a bare entity can be added to context."""

    return WindowEntity(
        id=entity.id,
        app_type=(entity.entity_type or "").lower(),
        title=entity.name,
        entity=entity,
    )


def set_active(content: WindowContent, active: bool) -> WindowContent:
    """Return ``content`` with ``is_active`` flipped, or the same object when unchanged."""

    if content.is_active == active:
        return content
    return replace(content, is_active=active)


__all__ = [
    "DOCS_APP_TYPE",
    "DocsWindowContent",
    "EntityRecord",
    "GenericWindowContent",
    "NOTES_APP_TYPE",
    "NoteWindowContent",
    "PDF_APP_TYPE",
    "PDFWindowContent",
    "SpaceContext",
    "WindowContent",
    "WindowEntity",
    "classify_window",
    "content_hash",
    "create_window_content",
    "format_window_type",
    "normalize_app_type",
    "pdf_entity_id",
    "set_active",
    "window_from_entity",
]
