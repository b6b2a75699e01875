"""Generation endpoint client, streaming and token bookkeeping."""

from .client import ClientSettings, GenerationClient
from .errors import ProviderOverloadedError, StreamError, StreamEventError, TransportError, classify_error
from .stream import StreamHandlers, StreamOutcome, StreamResult, StreamSession
from .tokens import ApproxByteCounter, ContextBudget, TiktokenCounter
from .tools import ToolCatalog, ToolSpec

__all__ = [
    "ApproxByteCounter",
    "ClientSettings",
    "ContextBudget",
    "GenerationClient",
    "ProviderOverloadedError",
    "StreamError",
    "StreamEventError",
    "StreamHandlers",
    "StreamOutcome",
    "StreamResult",
    "StreamSession",
    "TiktokenCounter",
    "ToolCatalog",
    "ToolSpec",
    "TransportError",
    "classify_error",
]
