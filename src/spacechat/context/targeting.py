"""Window targeting for tool calls.

Tool names follow an ``<app>_<action>`` convention (``pdf_getPage``,
``docs_insertText``, ``notes_append``). The resolver uses that convention to
decide which open window a tool call should operate on, preferring windows
that were explicitly added to the conversation context and only falling back
to the full window registry when none of them fit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping

from .models import (
    DOCS_APP_TYPE,
    PDF_APP_TYPE,
    DocsWindowContent,
    PDFWindowContent,
    SpaceContext,
    WindowContent,
    WindowEntity,
    classify_window,
    format_window_type,
    normalize_app_type,
    pdf_entity_id,
)

LOGGER = logging.getLogger(__name__)

_MISSING_IDS = frozenset({"", "undefined", "null", "None"})


class ToolCategory(str, Enum):
    PDF = "PDF"
    DOCUMENT = "Document"
    NOTE = "Note"
    COMPATIBLE = "compatible"


_APP_CATEGORY: Mapping[str, ToolCategory] = {
    PDF_APP_TYPE: ToolCategory.PDF,
    DOCS_APP_TYPE: ToolCategory.DOCUMENT,
    "notes": ToolCategory.NOTE,
}


@dataclass(slots=True, frozen=True)
class TargetingWeights:
    """Scores used to rank candidate windows."""

    context_base_score: int = 200
    registry_base_score: int = 100
    active_bonus: int = 50
    entity_bonus: int = 20


@dataclass(slots=True, frozen=True)
class WindowTarget:
    window_id: str
    window: WindowEntity | None
    score: int
    reason: str
    source: str

    @property
    def title(self) -> str:
        return self.window.display_title if self.window is not None else self.window_id


@dataclass(slots=True)
class TargetingResult:
    input: Dict[str, Any]
    was_modified: bool
    reason: str | None = None
    error: str | None = None


def infer_tool_type(tool_name: str) -> ToolCategory:
    """Infer the window category a tool needs from its name."""

    normalized = (tool_name or "").lower()
    if "pdf" in normalized:
        return ToolCategory.PDF
    if "doc" in normalized:
        return ToolCategory.DOCUMENT
    if "note" in normalized:
        return ToolCategory.NOTE
    return ToolCategory.COMPATIBLE


def is_compatible(tool_name: str, app_type: str | None, *, has_loaded_document: bool | None = None) -> bool:
    """Return True when a window of ``app_type`` can serve ``tool_name``.

    Document tools additionally need a loaded document; ``None`` means the
    window state is unknown and the check is skipped.
    """

    category = infer_tool_type(tool_name)
    if category is ToolCategory.COMPATIBLE:
        return True
    if _APP_CATEGORY.get(normalize_app_type(app_type)) is not category:
        return False
    if category is ToolCategory.DOCUMENT and has_loaded_document is False:
        return False
    return True


def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() in _MISSING_IDS)


class WindowTargetResolver:
    """Resolves and repairs the ``windowId`` of tool inputs."""

    def __init__(self, weights: TargetingWeights | None = None) -> None:
        self._weights = weights or TargetingWeights()

    @property
    def weights(self) -> TargetingWeights:
        return self._weights

    def resolve(
        self,
        tool_name: str,
        context: SpaceContext,
        windows: Mapping[str, WindowEntity],
        active_window_id: str | None,
    ) -> WindowTarget | None:
        """Pick the best window for ``tool_name`` or return ``None``."""

        weights = self._weights
        candidates: list[WindowTarget] = []
        contents = context.window_contents

        for window_id, content in contents.items():
            window = windows.get(window_id)
            if not is_compatible(
                tool_name,
                content.app_type,
                has_loaded_document=self._document_loaded(window, content),
            ):
                continue
            score = weights.context_base_score
            reason = f"context {format_window_type(content.app_type)}"
            if window_id == active_window_id:
                score += weights.active_bonus
                reason = f"active {reason}"
            if isinstance(content, PDFWindowContent) and content.entity_id:
                score += weights.entity_bonus
            candidates.append(WindowTarget(window_id, window, score, reason, "context"))

        if not candidates:
            LOGGER.debug("No compatible context windows for %s; scanning all windows", tool_name)
            for window_id, window in windows.items():
                if window_id in contents:
                    continue
                app_type = classify_window(window)
                if not is_compatible(
                    tool_name,
                    app_type,
                    has_loaded_document=self._document_loaded(window, None),
                ):
                    continue
                score = weights.registry_base_score
                reason = f"space {format_window_type(app_type)}"
                if window_id == active_window_id:
                    score += weights.active_bonus
                    reason = f"active {reason}"
                if app_type == PDF_APP_TYPE and pdf_entity_id(window):
                    score += weights.entity_bonus
                    reason += " (with entity)"
                candidates.append(WindowTarget(window_id, window, score, reason, "space"))

        if not candidates:
            return None
        # sorted() is stable, so equal scores keep encounter order
        best = sorted(candidates, key=lambda item: item.score, reverse=True)[0]
        LOGGER.debug(
            "Selected window %s for %s (score=%s, source=%s)",
            best.window_id,
            tool_name,
            best.score,
            best.source,
        )
        return best

    def enhance_tool_input(
        self,
        tool_name: str,
        original_input: Mapping[str, Any] | None,
        context: SpaceContext,
        windows: Mapping[str, WindowEntity],
        active_window_id: str | None,
        active_space_id: str | None = None,
    ) -> TargetingResult:
        """Return a corrected copy of ``original_input``; never raises."""

        enhanced: Dict[str, Any] = dict(original_input or {})
        modified = False
        reason: str | None = None
        error: str | None = None

        if active_space_id and enhanced.get("spaceId") != active_space_id:
            if not _missing(enhanced.get("spaceId")):
                LOGGER.debug(
                    "Tool %s targeted space %s; using active space %s",
                    tool_name,
                    enhanced.get("spaceId"),
                    active_space_id,
                )
            enhanced["spaceId"] = active_space_id
            modified = True

        category = infer_tool_type(tool_name)
        contents = context.window_contents
        window_id = enhanced.get("windowId")

        if _missing(window_id):
            if category is not ToolCategory.COMPATIBLE:
                target = self.resolve(tool_name, context, windows, active_window_id)
                if target is not None:
                    enhanced["windowId"] = target.window_id
                    modified = True
                    reason = f"Selected {target.reason} (from {target.source}) window: {target.title}"
                else:
                    error = self._no_target_error(tool_name, category, context)
        elif window_id not in contents:
            target = self.resolve(tool_name, context, windows, active_window_id)
            if target is not None:
                if target.window_id != window_id:
                    enhanced["windowId"] = target.window_id
                    modified = True
                    reason = f"Selected {target.reason} (from {target.source}) window: {target.title}"
            else:
                error = self._no_target_error(tool_name, category, context)
        else:
            existing = contents[window_id]
            if not is_compatible(
                tool_name,
                existing.app_type,
                has_loaded_document=self._document_loaded(windows.get(window_id), existing),
            ):
                target = self.resolve(tool_name, context, windows, active_window_id)
                if target is not None and target.window_id != window_id:
                    enhanced["windowId"] = target.window_id
                    modified = True
                    reason = f"Switched to compatible {target.reason} (from {target.source}) window"
                else:
                    error = self._incompatible_error(tool_name, category, existing)

        if error:
            LOGGER.warning("Window targeting failed for %s: %s", tool_name, error)
        elif reason:
            LOGGER.debug("Window targeting for %s: %s", tool_name, reason)
        return TargetingResult(input=enhanced, was_modified=modified, reason=reason, error=error)

    @staticmethod
    def _document_loaded(window: WindowEntity | None, content: WindowContent | None) -> bool | None:
        if window is not None:
            return bool(window.active_doc_id)
        if isinstance(content, DocsWindowContent):
            return bool(content.doc_id)
        return None

    @staticmethod
    def _no_target_error(tool_name: str, category: ToolCategory, context: SpaceContext) -> str:
        if category is ToolCategory.DOCUMENT:
            docs_windows = [
                content for content in context.window_contents.values() if content.app_type == DOCS_APP_TYPE
            ]
            if docs_windows:
                return (
                    f"Found {len(docs_windows)} docs window(s) in context, but none have a document loaded. "
                    "Please open a document in one of the docs windows first."
                )
            return "No document windows found in context. Please add a document window to context first."
        label = category.value
        return f"No {label} windows found in context. Please add a {label} window to context first."

    @staticmethod
    def _incompatible_error(tool_name: str, category: ToolCategory, existing: WindowContent) -> str:
        if category is ToolCategory.DOCUMENT and existing.app_type == DOCS_APP_TYPE:
            return (
                "The specified docs window has no document loaded. Please open a document first, "
                "or specify a different docs window with an active document."
            )
        return (
            f"Tool {tool_name} requires a {category.value} window, "
            f"but the specified window is {format_window_type(existing.app_type)}."
        )


def generate_context_description(
    context: SpaceContext,
    windows: Mapping[str, WindowEntity],
    active_window_id: str | None,
) -> str:
    """Describe the context windows and how tools should reference them."""

    contents = context.window_contents
    if not contents:
        return "No windows currently in context. Ask the user to add relevant windows to the context first."

    lines = ["Workspace Context:"]
    if active_window_id and active_window_id in contents and active_window_id in windows:
        active = contents[active_window_id]
        title = windows[active_window_id].display_title
        lines.append(f'Active: "{title}" ({format_window_type(active.app_type)}) [{active_window_id}]')

    others = [
        (window_id, content)
        for window_id, content in contents.items()
        if window_id != active_window_id and window_id in windows
    ]
    if others:
        lines.append("")
        lines.append("Available:")
        for window_id, content in others:
            title = windows[window_id].display_title
            lines.append(f'- "{title}" ({format_window_type(content.app_type)}) [{window_id}]')

    lines.extend(
        [
            "",
            "Tool Usage:",
            "- Always use the exact windowId from brackets above (e.g., [window-123])",
            "- Use the Active window when user refers to 'this' or 'current' content",
            "- If a tool fails due to wrong window type, request the user to open the correct type",
        ]
    )
    return "\n".join(lines) + "\n"


_DEFAULT_RESOLVER = WindowTargetResolver()


def resolve_target(
    tool_name: str,
    context: SpaceContext,
    windows: Mapping[str, WindowEntity],
    active_window_id: str | None,
) -> WindowTarget | None:
    return _DEFAULT_RESOLVER.resolve(tool_name, context, windows, active_window_id)


def enhance_tool_input(
    tool_name: str,
    original_input: Mapping[str, Any] | None,
    context: SpaceContext,
    windows: Mapping[str, WindowEntity],
    active_window_id: str | None,
    active_space_id: str | None = None,
) -> TargetingResult:
    return _DEFAULT_RESOLVER.enhance_tool_input(
        tool_name, original_input, context, windows, active_window_id, active_space_id
    )


__all__ = [
    "TargetingResult",
    "TargetingWeights",
    "ToolCategory",
    "WindowTarget",
    "WindowTargetResolver",
    "enhance_tool_input",
    "generate_context_description",
    "infer_tool_type",
    "is_compatible",
    "resolve_target",
]
