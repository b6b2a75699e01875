"""Token counting and context-window bookkeeping."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

import tiktoken

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package.

    The encoding is loaded on first use; models tiktoken does not know
    (including non-OpenAI models) use ``cl100k_base``.
    """

    def __init__(self, model_name: str | None = None, *, encoding_name: str | None = None) -> None:
        self.model_name = model_name
        self._encoding_name = encoding_name
        self._encoding: Any | None = None
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._get_encoding().encode(text))
        except Exception:  # pragma: no cover - encoding download or encode failure
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _get_encoding(self) -> Any:
        if self._encoding is None:
            self._encoding = self._load_encoding()
        return self._encoding

    def _load_encoding(self) -> Any:
        if self._encoding_name:
            return tiktoken.get_encoding(self._encoding_name)
        if self.model_name:
            try:
                return tiktoken.encoding_for_model(self.model_name)
            except KeyError:
                LOGGER.debug("Falling back to cl100k_base encoding for model %s", self.model_name)
        return tiktoken.get_encoding("cl100k_base")


def build_token_counter(tokenizer: str, model_name: str | None = None) -> TokenCounterProtocol:
    """Return the counter selected by the ``tokenizer`` setting."""

    if (tokenizer or "").strip().lower() == "tiktoken":
        return TiktokenCounter(model_name)
    return ApproxByteCounter(model_name=model_name)


@dataclass(slots=True, frozen=True)
class BudgetReport:
    prompt_tokens: int
    budget: int
    over_budget: bool
    dropped_messages: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "budget": self.budget,
            "over_budget": self.over_budget,
            "dropped_messages": self.dropped_messages,
        }


class ContextBudget:
    """Keeps the outgoing context + history inside the model's context window."""

    def __init__(
        self,
        counter: TokenCounterProtocol | None = None,
        *,
        max_context_tokens: int = 200_000,
        response_reserve: int = 8_000,
    ) -> None:
        self._counter = counter or ApproxByteCounter()
        self._max_context_tokens = max(1, int(max_context_tokens))
        self._response_reserve = max(0, int(response_reserve))

    @property
    def budget(self) -> int:
        return max(1, self._max_context_tokens - self._response_reserve)

    def count_payload(self, payload: Any) -> int:
        if payload is None:
            return 0
        if isinstance(payload, str):
            text = payload
        else:
            text = json.dumps(payload, ensure_ascii=False, default=str)
        try:
            return self._counter.count(text)
        except Exception:  # pragma: no cover - counter failure
            LOGGER.debug("Token counter failed; using estimate", exc_info=True)
            return self._counter.estimate(text)

    def fit(
        self,
        context_payload: Mapping[str, Any],
        history: Sequence[Mapping[str, Any]],
        query: Any = None,
    ) -> tuple[list[Mapping[str, Any]], BudgetReport]:
        """Drop the oldest history entries until the request fits the budget.

        The newest history entry is always kept.
        """

        fixed = self.count_payload(context_payload) + self.count_payload(query)
        costs = [self.count_payload(item) for item in history]
        total = fixed + sum(costs)
        budget = self.budget
        dropped = 0
        while total > budget and dropped < len(history) - 1:
            total -= costs[dropped]
            dropped += 1
        if dropped:
            LOGGER.info(
                "Context budget exceeded; dropped %d oldest history message(s) (%d/%d tokens)",
                dropped,
                total,
                budget,
            )
        report = BudgetReport(
            prompt_tokens=total,
            budget=budget,
            over_budget=total > budget,
            dropped_messages=dropped,
        )
        return list(history[dropped:]), report


__all__ = [
    "ApproxByteCounter",
    "BudgetReport",
    "ContextBudget",
    "TiktokenCounter",
    "TokenCounterProtocol",
    "build_token_counter",
]
