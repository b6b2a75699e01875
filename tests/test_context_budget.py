"""Tests for token counting and history trimming."""

from __future__ import annotations

import pytest

from spacechat.ai.tokens import ApproxByteCounter, ContextBudget, TiktokenCounter, build_token_counter


def _history(count: int, size: int = 40) -> list[dict]:
    return [{"role": "user", "content": [{"type": "text", "text": str(index) * size}]} for index in range(count)]


def test_approx_counter_uses_bytes() -> None:
    counter = ApproxByteCounter(bytes_per_token=4)

    assert counter.count("") == 0
    assert counter.count("abcd") == 1
    assert counter.count("abcde") == 2


def test_build_token_counter_selects_implementation() -> None:
    assert isinstance(build_token_counter("tiktoken", "claude-x"), TiktokenCounter)
    assert isinstance(build_token_counter("approx"), ApproxByteCounter)
    assert isinstance(build_token_counter(""), ApproxByteCounter)


def test_fit_keeps_everything_within_budget() -> None:
    budget = ContextBudget(max_context_tokens=10_000, response_reserve=1_000)
    history = _history(3)

    kept, report = budget.fit({"spaceId": "s"}, history, "hi")

    assert kept == history
    assert report.dropped_messages == 0
    assert report.over_budget is False
    assert report.budget == 9_000


def test_fit_drops_oldest_history_first() -> None:
    budget = ContextBudget(max_context_tokens=100, response_reserve=0)
    history = _history(6)

    kept, report = budget.fit({}, history, "query")

    assert kept == history[report.dropped_messages:]
    assert report.dropped_messages > 0
    assert kept[-1] == history[-1]
    assert report.prompt_tokens <= 100


def test_fit_always_keeps_newest_entry() -> None:
    budget = ContextBudget(max_context_tokens=5, response_reserve=0)
    history = _history(3, size=200)

    kept, report = budget.fit({}, history)

    assert kept == history[-1:]
    assert report.over_budget is True
    assert report.as_dict()["dropped_messages"] == 2


@pytest.mark.parametrize("payload, expected", [(None, 0), ("abcd", 1)])
def test_count_payload(payload, expected) -> None:
    assert ContextBudget().count_payload(payload) == expected
