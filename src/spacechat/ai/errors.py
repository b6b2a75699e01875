"""Stream error types and user-facing classification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import httpx

ErrorKind = Literal["overloaded", "timeout", "quota", "generic"]

OVERLOADED_MESSAGE = "The AI service is busy right now. Please try again shortly."
TIMEOUT_MESSAGE = "The request took too long to complete. Please try again."
QUOTA_MESSAGE = "You've reached your usage limit. Please try again later."


class StreamError(Exception):
    """Base class for failures surfaced through a stream's error callback."""


class TransportError(StreamError):
    """Network failure or non-2xx response from the generation endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamTimeoutError(TransportError):
    """The request or a stream read exceeded its timeout."""


class ProviderOverloadedError(StreamError):
    """The provider signalled backpressure (``overloaded_error``)."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "The AI provider is currently experiencing high traffic. Please try again in a few moments."
        )


class StreamEventError(StreamError):
    """An ``{"type": "error"}`` event was received mid-stream."""


@dataclass(slots=True, frozen=True)
class ErrorClassification:
    kind: ErrorKind
    user_message: str


def classify_error(error: BaseException) -> ErrorClassification:
    """Map an error to the message shown to the user in place of a reply."""

    text = str(error) or error.__class__.__name__
    lowered = text.lower()
    if isinstance(error, ProviderOverloadedError) or "high traffic" in lowered or "overloaded" in lowered:
        return ErrorClassification("overloaded", OVERLOADED_MESSAGE)
    timeout_types = (httpx.TimeoutException, TimeoutError, StreamTimeoutError)
    if isinstance(error, timeout_types) or "timeout" in lowered or "timed out" in lowered:
        return ErrorClassification("timeout", TIMEOUT_MESSAGE)
    status_code = getattr(error, "status_code", None)
    if status_code == 429 or "quota" in lowered or "rate limit" in lowered:
        return ErrorClassification("quota", QUOTA_MESSAGE)
    return ErrorClassification("generic", text)


__all__ = [
    "ErrorClassification",
    "ErrorKind",
    "OVERLOADED_MESSAGE",
    "ProviderOverloadedError",
    "QUOTA_MESSAGE",
    "StreamError",
    "StreamEventError",
    "StreamTimeoutError",
    "TIMEOUT_MESSAGE",
    "TransportError",
    "classify_error",
]
