"""Async client for the remote generation endpoint."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..chat.message_model import ContentBlock, TextBlock, ToolResultBlock
from ..context.models import SpaceContext
from .stream import StreamHandlers, StreamSession
from .tools import ToolCatalog

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the generation client."""

    base_url: str
    auth_token: str = ""
    model: str = ""
    chat_stream_path: str = "/claude/chat/stream"
    tool_output_path: str = "/claude/tool-output"
    models_path: str = "/claude/models"
    request_timeout: float | None = 300.0
    connect_timeout: float = 10.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class GenerationClient:
    """Builds streaming sessions and lists available models.

    Generation turns are never retried: a failed turn surfaces to the user,
    who decides whether to resend. Only idempotent lookups go through
    tenacity.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        catalog: ToolCatalog | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or self._build_client(settings)
        self._catalog = catalog or ToolCatalog()
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def catalog(self) -> ToolCatalog:
        return self._catalog

    def build_request(
        self,
        content: ContentBlock,
        context: SpaceContext,
        history: Sequence[Mapping[str, Any]],
        model: str | None = None,
    ) -> tuple[str, Dict[str, Any]]:
        """Return the endpoint URL and JSON body for one turn.

        Text turns go to the chat stream endpoint with a ``query``; tool
        results go to the tool-output endpoint with ``output`` and
        ``tool_use_id``.
        """

        body: Dict[str, Any] = {
            "context": context.as_payload(),
            "conversation_history": list(history),
            "tools": self._catalog.tools_for_context(context),
            "model": model or self._settings.model,
        }
        if isinstance(content, ToolResultBlock):
            body["output"] = content.content
            body["tool_use_id"] = content.tool_use_id
            body["stream"] = True
            path = self._settings.tool_output_path
        elif isinstance(content, TextBlock):
            body["query"] = content.text
            path = self._settings.chat_stream_path
        else:
            raise TypeError(f"Unsupported content block for a turn: {type(content).__name__}")
        if self._settings.debug_logging:
            LOGGER.debug(
                "Request to %s: windows=%s tools=%d history=%d",
                path,
                list(context.window_contents),
                len(body["tools"]),
                len(body["conversation_history"]),
            )
        return self._url(path), body

    def open_stream(
        self,
        content: ContentBlock,
        context: SpaceContext,
        history: Sequence[Mapping[str, Any]],
        handlers: StreamHandlers,
        *,
        model: str | None = None,
        log_prefix: str = "stream",
    ) -> StreamSession:
        url, body = self.build_request(content, context, history, model)
        return StreamSession(
            self._client,
            url,
            body,
            handlers,
            headers=self._headers(),
            log_prefix=log_prefix,
        )

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the model identifiers offered by the endpoint."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.get(
                        self._url(self._settings.models_path),
                        headers=self._headers(),
                    )
                    response.raise_for_status()
                    payload = response.json()
            models = _model_ids(payload)
            self._models_cache = models
            LOGGER.debug("Loaded %d model(s)", len(models))
            return list(models)

    async def aclose(self) -> None:
        """Close the HTTP client when this instance created it."""

        if not self._owns_client:
            return
        close = getattr(self._client, "aclose", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - client teardown
            LOGGER.debug("HTTP client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result

    def _build_client(self, settings: ClientSettings) -> httpx.AsyncClient:
        timeout = httpx.Timeout(settings.request_timeout, connect=settings.connect_timeout)
        headers = dict(settings.default_headers) if settings.default_headers else None
        return httpx.AsyncClient(timeout=timeout, headers=headers)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.auth_token:
            headers["Authorization"] = f"Bearer {self._settings.auth_token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self._settings.base_url.rstrip('/')}/{path.lstrip('/')}"

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


def _model_ids(payload: Any) -> List[str]:
    items = payload.get("data", payload.get("models", [])) if isinstance(payload, Mapping) else payload
    models: List[str] = []
    for item in items or []:
        if isinstance(item, Mapping):
            identifier = item.get("id") or item.get("name")
        else:
            identifier = item
        if identifier:
            models.append(str(identifier))
    return models


__all__ = ["ClientSettings", "GenerationClient"]
