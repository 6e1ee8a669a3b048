from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import uvicorn
from litestar import Litestar, Request, Response, get
from litestar.config.cors import CORSConfig
from litestar.plugins.prometheus import PrometheusController

from .errors import GatewayError, RangeNotSatisfiable
from .gateway import MovieGateway
from .metrics import prometheus_config

LOG = logging.getLogger("movie_gateway.app")


def gateway_error_handler(request: Request, error: GatewayError) -> Response:
    headers = None
    if isinstance(error, RangeNotSatisfiable):
        headers = {"Content-Range": error.content_range}
    LOG.debug(
        "%s %s failed with %d: %s",
        request.method,
        request.url.path,
        error.status_code,
        error.message,
    )
    return Response(
        content=error.to_dict(), status_code=error.status_code, headers=headers
    )


def create_app(gateway: MovieGateway | None = None) -> Litestar:
    """Create the movie gateway ASGI application."""
    gateway = gateway or MovieGateway.from_env()

    def link(request: Request, route: str, item_id: str, quality: str) -> str:
        url = request.url_for(route, item_id=item_id)
        return f"{url}?{urlencode({'quality': quality})}"

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @get("/search/{term:str}")
    async def search(term: str) -> Any:
        return await gateway.search(term)

    @get("/trending")
    async def trending() -> dict[str, Any]:
        items = await gateway.trending()
        return {"success": True, "results": {"items": items}, "total": len(items)}

    @get("/qualities/{item_id:str}")
    async def qualities(request: Request, item_id: str) -> dict[str, Any]:
        sources = await gateway.qualities(item_id)
        entries = [
            {
                "quality": source.quality,
                "size": source.size,
                "format": source.format,
                "stream_url": link(request, "stream_movie", item_id, source.quality),
                "download_url": link(
                    request, "download_movie", item_id, source.quality
                ),
            }
            for source in sources
        ]
        return {"success": True, "qualities": entries, "total": len(entries)}

    @get("/bulk-download/{item_id:str}")
    async def bulk_download(request: Request, item_id: str) -> dict[str, Any]:
        movie, options = await gateway.download_options(request, item_id)
        downloads = [
            {
                "quality": source.quality,
                "url": link(request, "download_movie", item_id, source.quality),
                "size": source.size,
                "filename": filename,
            }
            for source, filename in options
        ]
        return {"success": True, "data": {"movie": movie, "downloads": downloads}}

    @get("/stream/{item_id:str}", name="stream_movie")
    async def stream_movie(
        request: Request, item_id: str, quality: str | None = None
    ) -> Response:
        return await gateway.stream(request, item_id, quality)

    @get("/download/{item_id:str}", name="download_movie")
    async def download_movie(
        request: Request, item_id: str, quality: str | None = None
    ) -> Response:
        return await gateway.download(request, item_id, quality)

    async def startup(app: Litestar) -> None:
        await gateway.startup()

    async def shutdown(app: Litestar) -> None:
        await gateway.shutdown()

    cors_config = CORSConfig(
        allow_origins=gateway.settings.allowed_origins,
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "Accept-Ranges",
            "Content-Disposition",
            "Content-Length",
            "Content-Range",
        ],
    )

    app = Litestar(
        route_handlers=[
            health,
            search,
            trending,
            qualities,
            bulk_download,
            stream_movie,
            download_movie,
            PrometheusController,
        ],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
        exception_handlers={GatewayError: gateway_error_handler},
    )
    app.state.gateway = gateway
    return app


def main() -> None:
    gateway = MovieGateway.from_env()
    logging.basicConfig(
        level=gateway.settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(gateway),
        host=gateway.settings.host,
        port=gateway.settings.port,
    )
