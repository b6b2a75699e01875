"""Window registry and entity index collaborators.

The UI layer owns these; the chat core only reads them and listens for
active-window / active-space changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Iterable, Literal, Mapping, Protocol

from .models import EntityRecord, WindowEntity

LOGGER = logging.getLogger(__name__)

ChangeKind = Literal["active_window", "active_space"]


@dataclass(slots=True, frozen=True)
class RegistryChange:
    """Notification emitted when the active window or space changes."""

    kind: ChangeKind
    previous: str | None
    current: str | None


RegistryListener = Callable[[RegistryChange], None]


class EntityIndex(Protocol):
    """Lookup of generic entities by id."""

    def find(self, entity_id: str) -> EntityRecord | None:
        ...


class WindowRegistry:
    """Live mapping of window ids to window metadata for the active space."""

    def __init__(
        self,
        windows: Iterable[WindowEntity] = (),
        *,
        active_window_id: str | None = None,
        active_space_id: str | None = None,
    ) -> None:
        self._windows: dict[str, WindowEntity] = {window.id: window for window in windows}
        self._active_window_id = active_window_id
        self._active_space_id = active_space_id
        self._listeners: list[RegistryListener] = []

    @property
    def windows(self) -> Mapping[str, WindowEntity]:
        return MappingProxyType(self._windows)

    @property
    def active_window_id(self) -> str | None:
        return self._active_window_id

    @property
    def active_space_id(self) -> str | None:
        return self._active_space_id

    def get(self, window_id: str) -> WindowEntity | None:
        return self._windows.get(window_id)

    def upsert(self, window: WindowEntity) -> None:
        self._windows[window.id] = window

    def remove(self, window_id: str) -> None:
        self._windows.pop(window_id, None)
        if self._active_window_id == window_id:
            self.set_active_window(None)

    def set_active_window(self, window_id: str | None) -> None:
        previous = self._active_window_id
        if previous == window_id:
            return
        self._active_window_id = window_id
        self._notify(RegistryChange("active_window", previous, window_id))

    def set_active_space(self, space_id: str | None) -> None:
        previous = self._active_space_id
        if previous == space_id:
            return
        self._active_space_id = space_id
        self._notify(RegistryChange("active_space", previous, space_id))

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: RegistryChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:  # pragma: no cover
                LOGGER.exception("Registry listener failed for %s", change.kind)


class InMemoryEntityIndex:
    """Entity index backed by a dictionary."""

    def __init__(self, entities: Iterable[EntityRecord] = ()) -> None:
        self._entities = {entity.id: entity for entity in entities}

    def add(self, entity: EntityRecord) -> None:
        self._entities[entity.id] = entity

    def find(self, entity_id: str) -> EntityRecord | None:
        return self._entities.get(entity_id)


__all__ = [
    "EntityIndex",
    "InMemoryEntityIndex",
    "RegistryChange",
    "RegistryListener",
    "WindowRegistry",
]
