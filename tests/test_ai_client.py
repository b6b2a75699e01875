"""Tests for the generation endpoint client."""

from __future__ import annotations

import httpx
import pytest

from spacechat.ai.client import ClientSettings, GenerationClient
from spacechat.ai.stream import StreamHandlers
from spacechat.chat.message_model import TextBlock, ToolResultBlock, ToolUseBlock
from spacechat.context.models import PDFWindowContent, SpaceContext

from helpers import BASE_URL, make_client


def _context() -> SpaceContext:
    return SpaceContext(
        space_id="s1",
        window_contents={"w1": PDFWindowContent(window_id="w1", stable_id="pdf-e1", title="Paper", entity_id="e1")},
    )


def _unused(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never called
    raise AssertionError("unexpected request")


def test_build_request_for_text_turn() -> None:
    client = make_client(_unused)
    history = [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

    url, body = client.build_request(TextBlock(text="Hi"), _context(), history)

    assert url == f"{BASE_URL}/claude/chat/stream"
    assert body["query"] == "Hi"
    assert body["model"] == "test-model"
    assert body["conversation_history"] == history
    assert body["context"]["windowContents"]["w1"]["entityId"] == "e1"
    assert [tool["name"] for tool in body["tools"]] == ["pdf_zoomIn", "pdf_getPage"]
    assert "stream" not in body


def test_build_request_for_tool_result() -> None:
    client = make_client(_unused, tool_output_path="tools/output")

    url, body = client.build_request(
        ToolResultBlock(tool_use_id="tu-1", content='{"status": "success"}'), _context(), [], model="other"
    )

    assert url == f"{BASE_URL}/tools/output"
    assert body["output"] == '{"status": "success"}'
    assert body["tool_use_id"] == "tu-1"
    assert body["stream"] is True
    assert body["model"] == "other"
    assert "query" not in body


def test_build_request_rejects_tool_use_blocks() -> None:
    client = make_client(_unused)

    with pytest.raises(TypeError):
        client.build_request(ToolUseBlock(id="x", name="pdf_zoomIn"), _context(), [])


def test_open_stream_sets_auth_headers() -> None:
    client = make_client(_unused)
    handlers = StreamHandlers(on_text=lambda delta, full: None, on_done=lambda full, title: None)

    session = client.open_stream(TextBlock(text="Hi"), _context(), [], handlers, log_prefix="sendMessage")

    assert session.url == f"{BASE_URL}/claude/chat/stream"
    assert session.body["query"] == "Hi"
    assert session._headers["Authorization"] == "Bearer secret-token"


@pytest.mark.asyncio
async def test_list_models_is_cached_and_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(502)
        return httpx.Response(200, json={"data": [{"id": "claude-a"}, {"name": "claude-b"}, {}]})

    client = make_client(handler, retry_min_seconds=0, retry_max_seconds=0)

    first = await client.list_models()
    second = await client.list_models()

    assert first == ["claude-a", "claude-b"]
    assert second == first
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_list_models_force_refresh_accepts_plain_list() -> None:
    replies = [{"models": ["one"]}, ["two", "three"]]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=replies.pop(0))

    client = make_client(handler)

    assert await client.list_models() == ["one"]
    assert await client.list_models(force_refresh=True) == ["two", "three"]


@pytest.mark.asyncio
async def test_aclose_only_closes_owned_clients() -> None:
    shared = httpx.AsyncClient(transport=httpx.MockTransport(_unused))
    borrowed = GenerationClient(ClientSettings(base_url=BASE_URL), http_client=shared)
    owned = GenerationClient(ClientSettings(base_url=BASE_URL))

    await borrowed.aclose()
    await owned.aclose()

    assert not shared.is_closed
    assert owned._client.is_closed
    await shared.aclose()
