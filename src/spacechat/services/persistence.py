"""Entity persistence for threads and messages."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

LOGGER = logging.getLogger(__name__)


class EntityStore(Protocol):
    """Asynchronous document store keyed by ``_id``."""

    async def query_entities(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        ...

    async def batch_upsert(self, entities: Sequence[Mapping[str, Any]]) -> None:
        ...


def _lookup(entity: Mapping[str, Any], dotted_key: str) -> Any:
    current: Any = entity
    for part in dotted_key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def matches_filters(entity: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    """Return True when every (dotted) filter key equals the entity's value."""

    return all(_lookup(entity, key) == value for key, value in filters.items())


class InMemoryEntityStore:
    """Process-local store; records are deep-copied on the way in and out."""

    def __init__(self, entities: Sequence[Mapping[str, Any]] = ()) -> None:
        self._entities: Dict[str, Dict[str, Any]] = {}
        for entity in entities:
            self._put(entity)
        self.upsert_calls = 0

    def __len__(self) -> int:
        return len(self._entities)

    def get(self, entity_id: str) -> Dict[str, Any] | None:
        entity = self._entities.get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def query_entities(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return [copy.deepcopy(entity) for entity in self._entities.values() if matches_filters(entity, filters)]

    async def batch_upsert(self, entities: Sequence[Mapping[str, Any]]) -> None:
        self.upsert_calls += 1
        for entity in entities:
            self._put(entity)

    def _put(self, entity: Mapping[str, Any]) -> None:
        entity_id = entity.get("_id")
        if not entity_id:
            raise ValueError("Entity is missing an _id")
        self._entities[str(entity_id)] = copy.deepcopy(dict(entity))


@dataclass(slots=True)
class EntityServiceSettings:
    base_url: str
    entities_path: str = "/entities"
    auth_token: str = ""
    request_timeout: float | None = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0


class HttpEntityStore:
    """Entity store backed by the remote entity service.

    ``POST <entities_path>/query`` takes the filter object and returns a JSON
    list (or ``{"entities": [...]}``); ``POST <entities_path>/batch`` takes
    ``{"entities": [...]}``.
    """

    def __init__(self, settings: EntityServiceSettings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.request_timeout)

    async def query_entities(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        payload = await self._post("query", dict(filters))
        if isinstance(payload, Mapping):
            payload = payload.get("entities", [])
        if not isinstance(payload, list):
            raise ValueError("Entity query returned an unexpected payload")
        return [dict(item) for item in payload if isinstance(item, Mapping)]

    async def batch_upsert(self, entities: Sequence[Mapping[str, Any]]) -> None:
        if not entities:
            return
        await self._post("batch", {"entities": [dict(entity) for entity in entities]})
        LOGGER.debug("Persisted %d entit(y/ies)", len(entities))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, action: str, body: Mapping[str, Any]) -> Any:
        url = f"{self._settings.base_url.rstrip('/')}/{self._settings.entities_path.strip('/')}/{action}"
        headers = {}
        if self._settings.auth_token:
            headers["Authorization"] = f"Bearer {self._settings.auth_token}"
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.post(url, json=dict(body), headers=headers)
                response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
        )


__all__ = [
    "EntityServiceSettings",
    "EntityStore",
    "HttpEntityStore",
    "InMemoryEntityStore",
    "matches_filters",
]
