"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Iterator

import pytest

from spacechat.context.models import SpaceContext
from spacechat.context.registry import WindowRegistry
from spacechat.context.store import ContextStore
from spacechat.services.persistence import InMemoryEntityStore

from helpers import ScriptedBackend, docs_window, note_window, pdf_window


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def registry() -> WindowRegistry:
    return WindowRegistry(
        [
            pdf_window("w1", entity_id="e1"),
            docs_window("w2"),
            docs_window("w3", doc_id="doc-3", title="Plan"),
            note_window("w4"),
        ],
        active_window_id="w1",
        active_space_id="space-1",
    )


@pytest.fixture
def context_store(registry: WindowRegistry) -> Iterator[ContextStore]:
    store = ContextStore(registry)
    yield store
    store.dispose()


@pytest.fixture
def empty_context() -> SpaceContext:
    return SpaceContext(space_id="space-1")
