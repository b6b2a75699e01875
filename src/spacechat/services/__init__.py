"""Service layer helpers (persistence, settings)."""

from .persistence import EntityStore, HttpEntityStore, InMemoryEntityStore

__all__ = ["EntityStore", "HttpEntityStore", "InMemoryEntityStore"]
