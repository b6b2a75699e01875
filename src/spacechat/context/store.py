"""Context store holding the windows explicitly added to a conversation."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Mapping

from .models import SpaceContext, WindowContent, create_window_content, set_active, window_from_entity
from .registry import EntityIndex, RegistryChange, WindowRegistry

LOGGER = logging.getLogger(__name__)


class ContextStore:
    """Owns the ``WindowContent`` records of the active space's conversation context."""

    def __init__(
        self,
        registry: WindowRegistry,
        entity_index: EntityIndex | None = None,
        *,
        space_id: str | None = None,
    ) -> None:
        self._registry = registry
        self._entity_index = entity_index
        self._context = SpaceContext(space_id=space_id or registry.active_space_id or "")
        self._pasted_context: Mapping[str, Any] | None = None
        self._unsubscribe = registry.subscribe(self._on_registry_change)

    @property
    def context(self) -> SpaceContext:
        return self._context

    @property
    def pasted_context(self) -> Mapping[str, Any] | None:
        return self._pasted_context

    def snapshot(self) -> SpaceContext:
        """Return a copy of the context carrying the pasted selection, if any."""

        snapshot = self._context.copy()
        if self._pasted_context is not None:
            snapshot.current_selection = self._pasted_context
        return snapshot

    def add_window_to_context(self, window_id: str) -> WindowContent | None:
        """Normalize a window (or bare entity) and upsert it into the context."""

        window = self._registry.get(window_id)
        if window is None and self._entity_index is not None:
            entity = self._entity_index.find(window_id)
            if entity is not None:
                window = window_from_entity(entity)
        if window is None:
            LOGGER.debug("Cannot add %s to context: no window or entity with that id", window_id)
            return None

        content = create_window_content(
            window,
            is_active=self._registry.active_window_id == window_id,
        )
        contents = dict(self._context.window_contents)
        contents[window_id] = content
        self._context = replace(self._context, window_contents=contents)
        LOGGER.debug("Added %s (%s) to context for space %s", window_id, content.app_type, self._context.space_id)
        return content

    def remove_window_content(self, window_id: str) -> None:
        if window_id not in self._context.window_contents:
            return
        contents = dict(self._context.window_contents)
        contents.pop(window_id)
        self._context = replace(self._context, window_contents=contents)

    def set_window_content(self, window_id: str, **updates: Any) -> WindowContent | None:
        """Apply field updates to an existing entry."""

        current = self._context.window_contents.get(window_id)
        if current is None:
            return None
        updated = replace(current, **updates)
        contents = dict(self._context.window_contents)
        contents[window_id] = updated
        self._context = replace(self._context, window_contents=contents)
        return updated

    def set_active_space(self, space_id: str) -> None:
        """Switch spaces; context entries never carry over between spaces."""

        if space_id == self._context.space_id:
            return
        LOGGER.debug(
            "Switching context from space %s to %s; dropping %d entries",
            self._context.space_id,
            space_id,
            len(self._context.window_contents),
        )
        self._context = SpaceContext(space_id=space_id)
        self._pasted_context = None

    def set_pasted_context(self, selection: Mapping[str, Any] | None) -> None:
        self._pasted_context = selection

    def mark_refreshed(self, timestamp: int | None = None) -> SpaceContext:
        """Bump the cache-busting refresh marker after a content-mutating tool."""

        stamp = timestamp if timestamp is not None else int(time.time() * 1000)
        self._context = self._context.with_refresh(stamp)
        return self._context

    def dispose(self) -> None:
        self._unsubscribe()

    def _on_registry_change(self, change: RegistryChange) -> None:
        if change.kind == "active_window":
            self._sync_active_flags(change.current)
        elif change.kind == "active_space" and change.current and change.current != self._context.space_id:
            self.set_active_space(change.current)

    def _sync_active_flags(self, active_window_id: str | None) -> None:
        contents = self._context.window_contents
        updated: dict[str, WindowContent] = {}
        changed = False
        for window_id, content in contents.items():
            flipped = set_active(content, window_id == active_window_id)
            changed = changed or flipped is not content
            updated[window_id] = flipped
        if changed:
            self._context = replace(self._context, window_contents=updated)


__all__ = ["ContextStore"]
