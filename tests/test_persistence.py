"""Tests for thread/message entity persistence."""

from __future__ import annotations

import json

import httpx
import pytest

from spacechat.services.persistence import (
    EntityServiceSettings,
    HttpEntityStore,
    InMemoryEntityStore,
    matches_filters,
)


def _settings(**overrides) -> EntityServiceSettings:
    options = {
        "base_url": "http://entities.test/api/",
        "auth_token": "tok",
        "retry_min_seconds": 0,
        "retry_max_seconds": 0,
    }
    options.update(overrides)
    return EntityServiceSettings(**options)


def test_matches_filters_supports_dotted_keys() -> None:
    entity = {"entityType": "Message", "skeleton": {"thread_id": "t1"}}

    assert matches_filters(entity, {"entityType": "Message", "skeleton.thread_id": "t1"})
    assert not matches_filters(entity, {"skeleton.thread_id": "t2"})
    assert not matches_filters(entity, {"skeleton.missing.deeper": "x"})


@pytest.mark.asyncio
async def test_in_memory_store_upserts_and_queries_copies() -> None:
    store = InMemoryEntityStore([{"_id": "a", "entityType": "Thread", "name": "One"}])

    await store.batch_upsert(
        [{"_id": "a", "entityType": "Thread", "name": "Renamed"}, {"_id": "b", "entityType": "Message"}]
    )
    threads = await store.query_entities({"entityType": "Thread"})
    threads[0]["name"] = "mutated"

    assert len(store) == 2
    assert store.upsert_calls == 1
    assert store.get("a") == {"_id": "a", "entityType": "Thread", "name": "Renamed"}


@pytest.mark.asyncio
async def test_in_memory_store_rejects_missing_id() -> None:
    with pytest.raises(ValueError):
        await InMemoryEntityStore().batch_upsert([{"entityType": "Thread"}])


@pytest.mark.asyncio
async def test_http_store_posts_query_and_batch() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/query"):
            return httpx.Response(200, json={"entities": [{"_id": "t1", "entityType": "Thread"}]})
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = HttpEntityStore(_settings(), http_client=client)

    found = await store.query_entities({"entityType": "Thread", "user_id": "u1"})
    await store.batch_upsert([{"_id": "t1", "entityType": "Thread"}])
    await store.batch_upsert([])
    await store.aclose()

    assert found == [{"_id": "t1", "entityType": "Thread"}]
    assert [request.url.path for request in requests] == ["/api/entities/query", "/api/entities/batch"]
    assert json.loads(requests[0].content) == {"entityType": "Thread", "user_id": "u1"}
    assert json.loads(requests[1].content) == {"entities": [{"_id": "t1", "entityType": "Thread"}]}
    assert requests[0].headers["Authorization"] == "Bearer tok"
    assert not client.is_closed
    await client.aclose()


@pytest.mark.asyncio
async def test_http_store_accepts_plain_list_and_retries_server_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=[{"_id": "m1"}, "junk"])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = HttpEntityStore(_settings(), http_client=client)
        found = await store.query_entities({"entityType": "Message"})

    assert calls["count"] == 2
    assert found == [{"_id": "m1"}]


@pytest.mark.asyncio
async def test_http_store_gives_up_after_max_retries() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        store = HttpEntityStore(_settings(max_retries=2), http_client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await store.batch_upsert([{"_id": "x"}])

    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_http_store_rejects_unexpected_payload() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json="nope"))
    async with httpx.AsyncClient(transport=transport) as client:
        store = HttpEntityStore(_settings(), http_client=client)
        with pytest.raises(ValueError):
            await store.query_entities({})
