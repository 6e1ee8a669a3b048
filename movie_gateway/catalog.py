from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from .errors import UpstreamTimeout, UpstreamUnavailable

if TYPE_CHECKING:
    from .cache import KeyValueCache

LOG = logging.getLogger("movie_gateway.catalog")

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9]", re.IGNORECASE)

TRENDING_QUERIES = (
    "avengers",
    "spider man",
    "batman",
    "john wick",
    "mission impossible",
    "fast and furious",
)
TRENDING_PER_QUERY = 4
TRENDING_LIMIT = 20


def safe_filename(title: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", title).lower()


def attachment_name(
    subject: dict[str, Any] | None, item_id: str, quality: str
) -> str:
    """``{title}-{quality}.mp4``, or ``movie-{id}-{quality}.mp4`` without a title."""
    title = subject.get("title") if subject else None
    if title:
        base = safe_filename(str(title))
    else:
        base = f"movie-{safe_filename(item_id)}"
    return f"{base}-{safe_filename(quality)}.mp4"


class CatalogService:
    """Pass-through lookups against the upstream catalog, cached by query."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: KeyValueCache,
        timeout: float,
    ):
        self._client = client
        self._cache = cache
        self._timeout = timeout

    async def search(self, query: str) -> Any:
        cache_key = f"search:{query}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            LOG.debug("search cache hit for %r", query)
            return cached

        LOG.debug("searching upstream for %r", query)
        payload = await self._get_json(f"search/{quote(query, safe='')}")
        self._cache.set(cache_key, payload)
        return payload

    async def info(self, item_id: str) -> dict[str, Any] | None:
        """Return the upstream ``subject`` record for ``item_id``, if any."""
        cache_key = f"info:{item_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        payload = await self._get_json(f"info/{quote(item_id, safe='')}")
        if not isinstance(payload, dict) or not payload.get("success"):
            return None
        results = payload.get("results")
        subject = results.get("subject") if isinstance(results, dict) else None
        if not isinstance(subject, dict):
            return None
        self._cache.set(cache_key, subject)
        return subject

    async def download_filename(self, item_id: str, quality: str) -> str:
        try:
            subject = await self.info(item_id)
        except UpstreamUnavailable as error:
            LOG.warning(
                "info lookup for %s failed, using fallback name: %s", item_id, error
            )
            subject = None
        return attachment_name(subject, item_id, quality)

    async def trending(self) -> list[dict[str, Any]]:
        """Merge the leading hits of ``TRENDING_QUERIES`` into one list.

        Items are deduplicated by ``subjectId`` keeping the first occurrence,
        and the list is capped at ``TRENDING_LIMIT``. A failing query is
        logged and skipped.
        """
        cached = self._cache.get("trending")
        if cached is not None:
            return cached

        items: dict[Any, dict[str, Any]] = {}
        for query in TRENDING_QUERIES:
            try:
                payload = await self.search(query)
            except UpstreamUnavailable as error:
                LOG.warning("trending query %r failed: %s", query, error)
                continue
            for item in _search_items(payload)[:TRENDING_PER_QUERY]:
                items.setdefault(item.get("subjectId"), item)

        trending = list(items.values())[:TRENDING_LIMIT]
        if trending:
            self._cache.set("trending", trending)
        return trending

    async def _get_json(self, url: str) -> Any:
        try:
            response = await self._client.get(url, timeout=self._timeout)
            response.raise_for_status()
        except httpx.TimeoutException as error:
            msg = f"Catalog lookup {url} timed out"
            raise UpstreamTimeout(msg) from error
        except httpx.HTTPError as error:
            msg = f"Catalog lookup {url} failed: {error}"
            raise UpstreamUnavailable(msg) from error

        try:
            return response.json()
        except ValueError as error:
            msg = f"Catalog lookup {url} returned invalid JSON"
            raise UpstreamUnavailable(msg) from error


def _search_items(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict) or not payload.get("success"):
        return []
    results = payload.get("results")
    items = results.get("items") if isinstance(results, dict) else None
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict) and "subjectId" in item]
