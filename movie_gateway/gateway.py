from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any

import httpx

from .cache import TTLCache
from .catalog import CatalogService, attachment_name
from .errors import Forbidden, GatewayError
from .hooks import allow_all, log_stream_event
from .metrics import STREAM_EVENTS
from .proxy import StreamProxy
from .resolver import SourceResolver
from .settings import GatewaySettings, load_settings_from_env

if TYPE_CHECKING:
    from litestar import Request

    from .cache import KeyValueCache
    from .hooks import Authorizer, StreamEventHook
    from .models import MediaSource
    from .proxy import RelayResponse

LOG = logging.getLogger("movie_gateway.gateway")


class MovieGateway:
    def __init__(
        self,
        settings: GatewaySettings,
        *,
        authorizer: Authorizer | None = None,
        on_stream_event: StreamEventHook | None = None,
        cache: KeyValueCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self._authorizer = authorizer or allow_all
        self._on_stream_event = on_stream_event or log_stream_event
        if cache is None:
            cache = TTLCache(
                ttl=settings.cache_ttl, max_entries=settings.cache_max_entries
            )
        self._cache = cache
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._resolver: SourceResolver | None = None
        self._proxy: StreamProxy | None = None
        self._catalog: CatalogService | None = None

    async def startup(self) -> None:
        if self._http_client is not None:
            return
        self._http_client = httpx.AsyncClient(
            base_url=self.settings.upstream_base_url,
            timeout=httpx.Timeout(self.settings.fetch_timeout),
            follow_redirects=True,
            transport=self._transport,
        )
        self._resolver = SourceResolver(
            self._http_client, timeout=self.settings.sources_timeout
        )
        self._proxy = StreamProxy(
            self._http_client,
            probe_timeout=self.settings.probe_timeout,
            fetch_timeout=self.settings.fetch_timeout,
            chunk_size=self.settings.chunk_size,
        )
        self._catalog = CatalogService(
            self._http_client, self._cache, timeout=self.settings.sources_timeout
        )
        LOG.info(
            "movie gateway ready (upstream=%s, chunk=%d bytes)",
            self.settings.upstream_base_url,
            self.settings.chunk_size,
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._resolver = self._proxy = self._catalog = None

    @property
    def resolver(self) -> SourceResolver:
        if self._resolver is None:
            message = "gateway not initialised"
            raise RuntimeError(message)
        return self._resolver

    @property
    def proxy(self) -> StreamProxy:
        if self._proxy is None:
            message = "gateway not initialised"
            raise RuntimeError(message)
        return self._proxy

    @property
    def catalog(self) -> CatalogService:
        if self._catalog is None:
            message = "gateway not initialised"
            raise RuntimeError(message)
        return self._catalog

    async def stream(
        self, request: Request, item_id: str, quality: str | None = None
    ) -> RelayResponse:
        """Resolve ``item_id`` and relay it, honouring the ``Range`` header."""
        quality = quality or self.settings.default_quality
        await self._authorize(request, item_id, quality)
        source = await self._resolve(item_id, quality)
        range_header = request.headers.get("range")
        LOG.info(
            "stream %s quality=%s (requested %s) range=%s",
            item_id,
            source.quality,
            quality,
            range_header or "-",
        )

        on_event = partial(self._emit, item_id, source.quality)
        try:
            response = await self.proxy.stream(
                source.download_url,
                range_header,
                declared_size=source.size,
                on_event=on_event,
            )
        except GatewayError as error:
            on_event("error", error.message)
            raise
        on_event("start", f"status={response.status_code}")
        return response

    async def download(
        self, request: Request, item_id: str, quality: str | None = None
    ) -> RelayResponse:
        """Relay the whole file as an attachment, ignoring any ``Range``."""
        quality = quality or self.settings.default_quality
        await self._authorize(request, item_id, quality)
        source = await self._resolve(item_id, quality)
        filename = await self.catalog.download_filename(item_id, source.quality)
        LOG.info("download %s quality=%s as %s", item_id, source.quality, filename)

        on_event = partial(self._emit, item_id, source.quality)
        try:
            response = await self.proxy.full_relay(
                source.download_url,
                timeout=self.settings.download_timeout,
                extra_headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Disposition": f'attachment; filename="{filename}"',
                },
                accept_ranges=False,
                on_event=on_event,
            )
        except GatewayError as error:
            on_event("error", error.message)
            raise
        on_event("download", f"{source.size or 'unknown'} bytes declared")
        return response

    async def qualities(self, item_id: str) -> list[MediaSource]:
        return await self.resolver.list_sources(item_id)

    async def download_options(
        self, request: Request, item_id: str
    ) -> tuple[dict[str, Any] | None, list[tuple[MediaSource, str]]]:
        """Every downloadable rendition of ``item_id`` with its attachment name.

        The catalog record is ``None`` when the info lookup fails; names then
        fall back to ``movie-{id}``.
        """
        await self._authorize(request, item_id, "*")
        sources = await self.resolver.list_sources(item_id)
        try:
            subject = await self.catalog.info(item_id)
        except GatewayError as error:
            LOG.warning("info lookup for %s failed: %s", item_id, error)
            subject = None
        return subject, [
            (source, attachment_name(subject, item_id, source.quality))
            for source in sources
        ]

    async def search(self, query: str) -> Any:
        return await self.catalog.search(query)

    async def trending(self) -> list[dict[str, Any]]:
        return await self.catalog.trending()

    async def _resolve(self, item_id: str, quality: str) -> MediaSource:
        try:
            return await self.resolver.resolve(item_id, quality)
        except GatewayError as error:
            self._emit(item_id, quality, "error", error.message)
            raise

    async def _authorize(self, request: Request, item_id: str, quality: str) -> None:
        if not await self._authorizer(request):
            LOG.info("authorization denied for %s", item_id)
            self._emit(item_id, quality, "error", "authorization denied")
            raise Forbidden

    def _emit(self, item_id: str, quality: str, event: str, detail: str = "") -> None:
        STREAM_EVENTS.labels(event=event).inc()
        try:
            self._on_stream_event(item_id, quality, event, detail)
        except Exception:
            LOG.exception("stream event hook failed for %s (%s)", item_id, event)

    @classmethod
    def from_env(cls, **kwargs: Any) -> MovieGateway:
        """Create a MovieGateway configured from environment variables.

        Returns:
            MovieGateway using settings loaded from the environment.
        """
        return cls(load_settings_from_env(), **kwargs)
