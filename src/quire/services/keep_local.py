"""Async client for the local read-it-later service ("keep-local")."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.models import Document, DocumentSource, new_id, now_millis
from ..session.errors import KeepLocalError

__all__ = [
    "DEFAULT_BASE_URL",
    "KeepLocalClient",
    "KeepLocalClientSettings",
    "KeepLocalHealth",
    "KeepLocalItem",
    "KeepLocalItemList",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8787"


@dataclass(slots=True)
class KeepLocalClientSettings:
    """Subset of settings required to configure the keep-local client."""

    base_url: str = DEFAULT_BASE_URL
    request_timeout: float | None = 10.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0

    @classmethod
    def from_settings(cls, settings: Any) -> KeepLocalClientSettings:
        return cls(
            base_url=settings.keep_local_base_url,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
        )


@dataclass(slots=True)
class KeepLocalHealth:
    ok: bool
    now: int


@dataclass(slots=True)
class KeepLocalItem:
    """A saved article as described by the service's camelCase JSON."""

    id: str
    url: str
    created_at: int
    status: str
    title: str | None = None
    author: str | None = None
    domain: str | None = None
    platform: str | None = None
    word_count: int = 0
    tags: list[str] = field(default_factory=list)
    content_available: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> KeepLocalItem:
        try:
            return cls(
                id=str(payload["id"]),
                url=str(payload["url"]),
                created_at=int(payload["createdAt"]),
                status=str(payload["status"]),
                title=payload.get("title"),
                author=payload.get("author"),
                domain=payload.get("domain"),
                platform=payload.get("platform"),
                word_count=int(payload.get("wordCount") or 0),
                tags=list(payload.get("tags") or []),
                content_available=bool(payload.get("contentAvailable", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise KeepLocalError(f"Malformed item payload: {exc}") from exc

    def to_document(self, *, existing: Document | None = None) -> Document:
        """Build the :class:`Document` record for this item."""

        now = now_millis()
        return Document(
            id=existing.id if existing is not None else new_id(),
            source=DocumentSource.KEEP_LOCAL,
            keep_local_id=self.id,
            title=self.title,
            author=self.author,
            url=self.url,
            word_count=self.word_count,
            last_opened_at=now,
            created_at=existing.created_at if existing is not None else now,
        )


@dataclass(slots=True)
class KeepLocalItemList:
    items: List[KeepLocalItem]
    count: int


class KeepLocalClient:
    """Async HTTP client with retry semantics for the keep-local API."""

    def __init__(
        self,
        settings: KeepLocalClientSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or KeepLocalClientSettings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.base_url, timeout=self._settings.request_timeout
        )

    @property
    def settings(self) -> KeepLocalClientSettings:
        return self._settings

    async def health(self) -> KeepLocalHealth:
        payload = await self._get_json("/api/health")
        return KeepLocalHealth(ok=bool(payload.get("ok")), now=int(payload.get("now") or 0))

    async def list_items(
        self,
        *,
        limit: int | None = None,
        offset: int | None = None,
        query: str | None = None,
        status: str | None = None,
    ) -> KeepLocalItemList:
        params: dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        if query:
            params["q"] = query
        if status:
            params["status"] = status
        payload = await self._get_json("/api/items", params=params)
        items = [KeepLocalItem.from_payload(item) for item in payload.get("items") or []]
        return KeepLocalItemList(items=items, count=int(payload.get("count", len(items))))

    async def get_item(self, item_id: str) -> KeepLocalItem:
        payload = await self._get_json(f"/api/items/{_item_segment(item_id)}", params={"content": 0})
        return KeepLocalItem.from_payload(payload)

    async def get_content(self, item_id: str) -> str:
        """Return the article's markdown."""

        response = await self._request("GET", f"/api/items/{_item_segment(item_id)}/content")
        return response.text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str, *, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        response = await self._request("GET", path, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise KeepLocalError(f"Failed to parse response from {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise KeepLocalError(f"Unexpected response shape from {path}")
        return payload

    async def _request(
        self, method: str, path: str, *, params: Mapping[str, Any] | None = None
    ) -> httpx.Response:
        LOGGER.debug("keep-local %s %s params=%s", method, path, dict(params or {}))
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.request(method, path, params=params)
                    if response.status_code >= 500:
                        response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise KeepLocalError(
                f"keep-local returned {exc.response.status_code} for {path}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise KeepLocalError(f"keep-local server unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise KeepLocalError(
                f"keep-local returned {response.status_code} for {path}",
                status_code=response.status_code,
            )
        return response

    def _retrying(self) -> AsyncRetrying:
        # 4xx answers are final; only transport errors and 5xx are retried.
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    httpx.TransportError,
                    httpx.HTTPStatusError,
                )
            ),
        )


def _item_segment(item_id: str) -> str:
    """Percent-encode ``item_id`` so it stays a single path segment."""

    return quote(item_id, safe="")
