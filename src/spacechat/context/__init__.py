"""Window registry, conversation context and tool window targeting."""

from .models import SpaceContext, WindowContent, WindowEntity
from .registry import InMemoryEntityIndex, WindowRegistry
from .store import ContextStore
from .targeting import TargetingWeights, WindowTargetResolver

__all__ = [
    "ContextStore",
    "InMemoryEntityIndex",
    "SpaceContext",
    "TargetingWeights",
    "WindowContent",
    "WindowEntity",
    "WindowRegistry",
    "WindowTargetResolver",
]
