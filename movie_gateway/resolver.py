from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .errors import (
    ItemNotFound,
    QualityUnavailable,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from .models import MediaSource

if TYPE_CHECKING:
    from collections.abc import Sequence

LOG = logging.getLogger("movie_gateway.resolver")


def select_source(sources: Sequence[MediaSource], quality: str) -> MediaSource:
    """Pick the exact quality match, else the first source in upstream order.

    Raises:
        QualityUnavailable: ``sources`` is empty.
    """
    for source in sources:
        if source.quality == quality:
            return source
    if not sources:
        msg = f"No source available for quality {quality!r}"
        raise QualityUnavailable(msg)
    return sources[0]


class SourceResolver:
    def __init__(self, client: httpx.AsyncClient, timeout: float):
        self._client = client
        self._timeout = timeout

    async def resolve(self, item_id: str, quality: str) -> MediaSource:
        sources = await self.list_sources(item_id)
        selected = select_source(sources, quality)
        if selected.quality != quality:
            LOG.debug(
                "quality %s unavailable for %s, falling back to %s",
                quality,
                item_id,
                selected.quality,
            )
        return selected

    async def list_sources(self, item_id: str) -> list[MediaSource]:
        if not item_id:
            msg = "Empty item id"
            raise ItemNotFound(msg)

        payload = await self._fetch_sources(item_id)
        if not isinstance(payload, dict) or not payload.get("success"):
            msg = f"Upstream has no sources for {item_id}"
            raise ItemNotFound(msg)

        results = payload.get("results") or []
        if not isinstance(results, list):
            msg = "Malformed sources response"
            raise UpstreamUnavailable(msg)

        sources = self._parse_sources(item_id, results)
        if not sources:
            msg = f"Upstream has no sources for {item_id}"
            raise ItemNotFound(msg)
        return sources

    async def _fetch_sources(self, item_id: str) -> Any:
        url = f"sources/{quote(item_id, safe='')}"
        try:
            response = await self._client.get(url, timeout=self._timeout)
        except httpx.TimeoutException as error:
            LOG.warning("sources lookup timed out for %s", item_id)
            msg = f"Sources lookup timed out for {item_id}"
            raise UpstreamTimeout(msg) from error
        except httpx.HTTPError as error:
            LOG.warning("sources lookup failed for %s: %s", item_id, error)
            msg = f"Sources lookup failed: {error}"
            raise UpstreamUnavailable(msg) from error

        if response.status_code == 404:
            msg = f"Upstream does not know {item_id}"
            raise ItemNotFound(msg)
        if response.is_error:
            LOG.warning(
                "sources lookup for %s returned status %s",
                item_id,
                response.status_code,
            )
            msg = f"Sources lookup returned status {response.status_code}"
            raise UpstreamUnavailable(msg)

        try:
            return response.json()
        except ValueError as error:
            msg = "Sources response is not valid JSON"
            raise UpstreamUnavailable(msg) from error

    @staticmethod
    def _parse_sources(item_id: str, results: list[Any]) -> list[MediaSource]:
        sources: list[MediaSource] = []
        for index, entry in enumerate(results):
            try:
                sources.append(MediaSource.model_validate(entry))
            except ValidationError as error:
                LOG.warning(
                    "skipping unusable source #%d for %s: %s",
                    index,
                    item_id,
                    error.errors()[0]["msg"] if error.errors() else error,
                )
        return sources
