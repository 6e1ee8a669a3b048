from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anyio
import httpx
import pytest
from movie_gateway import MovieGateway, create_app
from movie_gateway.settings import load_settings_from_env

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator

    from movie_gateway.settings import GatewaySettings

UPSTREAM_URL = "https://upstream.test/api"
CDN_URL = "https://cdn.test/media"

_RANGE = re.compile(r"bytes=(\d+)-(\d*)")


class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that records whether the proxy closed it."""

    def __init__(
        self,
        body: bytes,
        *,
        chunk: int = 4,
        forever: bool = False,
        fail_after: int | None = None,
    ):
        self.body = body
        self.chunk = chunk
        self.forever = forever
        self.fail_after = fail_after
        self.closed = False
        self.bytes_read = 0

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            for offset in range(0, len(self.body), self.chunk):
                if self.fail_after is not None and self.bytes_read >= self.fail_after:
                    msg = "connection reset by upstream"
                    raise httpx.ReadError(msg)
                piece = self.body[offset : offset + self.chunk]
                self.bytes_read += len(piece)
                yield piece
                if self.forever:
                    await anyio.sleep(0.001)
            if not self.forever:
                break

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class FakeUpstream:
    """In-memory stand-in for the catalog API and its media CDN."""

    sources: dict[str, Any] = field(default_factory=dict)
    media: dict[str, bytes] = field(default_factory=dict)
    content_types: dict[str, str] = field(default_factory=dict)
    info: dict[str, Any] = field(default_factory=dict)
    search_results: dict[str, Any] = field(default_factory=dict)
    head_status: int = 200
    probe_get_status: int | None = None
    ignore_range: bool = False
    media_status: int = 200
    media_forever: bool = False
    media_fail_after: int | None = None
    raise_on: dict[str, Exception] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)
    streams: list[TrackingStream] = field(default_factory=list)

    def add_item(self, item_id: str, *renditions: tuple[str, bytes]) -> None:
        entries = []
        for quality, body in renditions:
            name = f"{item_id}-{quality}.mp4"
            self.media[name] = body
            entries.append(
                {
                    "quality": quality,
                    "download_url": f"{CDN_URL}/{name}",
                    "size": str(len(body)),
                    "format": "mp4",
                }
            )
        self.sources[item_id] = {"success": True, "results": entries}

    def media_requests(self, method: str = "GET") -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.host == "cdn.test" and r.method == method
        ]

    def upstream_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == "upstream.test"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        target = f"{request.url.host}{path}"
        for prefix, error in self.raise_on.items():
            if target.startswith(prefix) or f"{request.method} {target}".startswith(
                prefix
            ):
                raise error
        if request.url.host == "cdn.test":
            return self._media(request)
        kind, _, key = path.removeprefix("/api/").partition("/")
        table = {
            "sources": self.sources,
            "info": self.info,
            "search": self.search_results,
        }.get(kind)
        if table is None or key not in table:
            return httpx.Response(404, json={"success": False})
        return httpx.Response(200, json=table[key])

    def _media(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        body = self.media.get(name)
        if body is None:
            return httpx.Response(404)
        content_type = self.content_types.get(name, "video/mp4")

        if request.method == "HEAD":
            if self.head_status != 200:
                return httpx.Response(self.head_status)
            return httpx.Response(
                200,
                headers={
                    "content-length": str(len(body)),
                    "content-type": content_type,
                    "accept-ranges": "bytes",
                },
            )

        range_header = request.headers.get("range")
        if range_header == "bytes=0-0" and self.probe_get_status is not None:
            return httpx.Response(self.probe_get_status)
        if self.media_status != 200:
            return httpx.Response(self.media_status)

        match = _RANGE.match(range_header or "")
        if match and not self.ignore_range:
            start = int(match.group(1))
            end = int(match.group(2)) if match.group(2) else len(body) - 1
            part = body[start : end + 1]
            return httpx.Response(
                206,
                headers={
                    "content-range": f"bytes {start}-{end}/{len(body)}",
                    "content-length": str(len(part)),
                    "content-type": content_type,
                },
                stream=self._track(part),
            )
        return httpx.Response(
            200,
            headers={"content-length": str(len(body)), "content-type": content_type},
            stream=self._track(body),
        )

    def _track(self, body: bytes) -> TrackingStream:
        stream = TrackingStream(
            body, forever=self.media_forever, fail_after=self.media_fail_after
        )
        self.streams.append(stream)
        return stream


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def events() -> list[tuple[str, str, str, str]]:
    return []


@pytest.fixture
def gateway_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Environment pointing the gateway at the fake upstream."""
    env = {
        "MOVIE_GATEWAY_UPSTREAM_URL": UPSTREAM_URL,
        "MOVIE_GATEWAY_CHUNK_SIZE": "4",
        "MOVIE_GATEWAY_PROBE_TIMEOUT": "2",
        "MOVIE_GATEWAY_FETCH_TIMEOUT": "5",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture
def settings(gateway_env) -> GatewaySettings:
    return load_settings_from_env()


@pytest.fixture
async def gateway(
    settings: GatewaySettings,
    upstream: FakeUpstream,
    events: list[tuple[str, str, str, str]],
) -> AsyncGenerator[MovieGateway]:
    """Started gateway whose HTTP client talks to the fake upstream."""
    gateway = MovieGateway(
        settings,
        transport=httpx.MockTransport(upstream.handler),
        on_stream_event=lambda *event: events.append(event),
    )
    await gateway.startup()
    yield gateway
    await gateway.shutdown()


@pytest.fixture
async def client(gateway: MovieGateway) -> AsyncGenerator[httpx.AsyncClient]:
    app = create_app(gateway)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://gateway.test"
    ) as client:
        yield client
