from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import anyio
import httpx
from litestar.response import Stream

from .errors import InternalRelayFailure, UpstreamTimeout, UpstreamUnavailable
from .ranges import (
    RangeSpec,
    parse_range,
    span_from_content_range,
    total_from_content_range,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from litestar.types import ASGIApp, Receive, Scope, Send

    EventCallback = Callable[[str, str], None]

LOG = logging.getLogger("movie_gateway.proxy")

DEFAULT_CONTENT_TYPE = "video/mp4"
UNKNOWN_CONTENT_TYPE = "application/octet-stream"


class StreamState(StrEnum):
    OPEN = "open"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeResult:
    total_size: int
    content_type: str | None


def _int_header(headers: Mapping[str, str], name: str) -> int | None:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class StreamSession:
    """Owns the upstream response backing one downstream response.

    ``skip`` and ``limit`` carve a byte window out of the upstream body, for
    upstreams that answer a ranged request with the whole resource.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        *,
        chunk_size: int,
        skip: int = 0,
        limit: int | None = None,
        on_event: EventCallback | None = None,
    ):
        self.upstream = upstream
        self.state = StreamState.OPEN
        self.bytes_sent = 0
        self._chunk_size = chunk_size
        self._skip = skip
        self._limit = limit
        self._on_event = on_event

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        skip = self._skip
        remaining = self._limit
        try:
            async for chunk in self.upstream.aiter_raw(self._chunk_size):
                if skip:
                    if len(chunk) <= skip:
                        skip -= len(chunk)
                        continue
                    chunk = chunk[skip:]
                    skip = 0
                if remaining is not None:
                    chunk = chunk[:remaining]
                    remaining -= len(chunk)
                if chunk:
                    self.bytes_sent += len(chunk)
                    yield chunk
                if remaining == 0:
                    break
        except httpx.HTTPError as error:
            self._finish(StreamState.FAILED, str(error) or type(error).__name__)
            LOG.warning(
                "upstream failed after %d bytes from %s: %s",
                self.bytes_sent,
                self.upstream.url,
                error,
            )
            msg = f"Upstream failed mid-relay after {self.bytes_sent} bytes"
            raise InternalRelayFailure(msg) from error

        if remaining:
            self._finish(StreamState.FAILED, f"short body, {remaining} bytes missing")
            LOG.warning(
                "upstream body from %s ended %d bytes early",
                self.upstream.url,
                remaining,
            )
            msg = f"Upstream body ended {remaining} bytes early"
            raise InternalRelayFailure(msg)

        self._finish(StreamState.COMPLETED, f"{self.bytes_sent} bytes streamed")

    async def aclose(self) -> None:
        if self.state is StreamState.OPEN:
            self._finish(
                StreamState.ABORTED, f"client left after {self.bytes_sent} bytes"
            )
            LOG.debug(
                "closing upstream %s after client disconnect (%d bytes sent)",
                self.upstream.url,
                self.bytes_sent,
            )
        await self.upstream.aclose()

    def _finish(self, state: StreamState, detail: str) -> None:
        if self.state is not StreamState.OPEN:
            return
        self.state = state
        if self._on_event is not None:
            event = {
                StreamState.COMPLETED: "complete",
                StreamState.ABORTED: "aborted",
                StreamState.FAILED: "error",
            }[state]
            self._on_event(event, detail)


class RelayResponse(Stream):
    """Streaming response that closes its upstream once it is done.

    ``Content-Type`` travels as the response media type. Litestar always
    writes one, so a relay whose upstream sent none declares
    ``application/octet-stream``.
    """

    def __init__(
        self,
        session: StreamSession,
        *,
        status_code: int,
        headers: Mapping[str, str],
    ):
        headers = dict(headers)
        content_type = headers.pop("Content-Type", None)
        super().__init__(
            content=session.iter_bytes(),
            status_code=status_code,
            headers=headers,
            media_type=content_type or UNKNOWN_CONTENT_TYPE,
        )
        self.session = session

    def to_asgi_response(self, *args: Any, **kwargs: Any) -> ASGIApp:
        return _ClosingASGIResponse(
            super().to_asgi_response(*args, **kwargs), self.session
        )


class _ClosingASGIResponse:
    """Runs a streaming ASGI response and then releases its session.

    Cleanup runs whether the relay completed, failed or the client
    disconnected, and is shielded from the cancellation that a disconnect
    triggers. A disconnect surfaces either as the response's disconnect
    listener cancelling the body, or as ``send`` raising ``OSError`` on
    servers implementing ASGI 2.4.
    """

    def __init__(self, response: ASGIApp, session: StreamSession):
        self._response = response
        self._session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await self._response(scope, receive, send)
        except* OSError:
            LOG.debug("client disconnected from %s", self._session.upstream.url)
        finally:
            with anyio.CancelScope(shield=True):
                await self._session.aclose()


class StreamProxy:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        probe_timeout: float,
        fetch_timeout: float,
        chunk_size: int,
    ):
        self._client = client
        self._probe_timeout = probe_timeout
        self._fetch_timeout = fetch_timeout
        self._chunk_size = chunk_size

    async def stream(
        self,
        media_url: str,
        range_header: str | None,
        *,
        declared_size: int | None = None,
        on_event: EventCallback | None = None,
    ) -> RelayResponse:
        """Relay ``media_url`` honouring the client's ``Range`` header.

        Without a range the whole body is relayed with status 200. With a range
        the upstream is probed for its real size first; if the probe fails the
        request degrades to a full relay rather than failing.

        Raises:
            RangeNotSatisfiable: the range falls outside the probed size.
            UpstreamUnavailable: the media fetch failed before any byte was sent.
        """
        if not range_header:
            return await self.full_relay(media_url, on_event=on_event)

        probe = await self.probe(media_url)
        if probe is None:
            LOG.warning(
                "size probe failed for %s, serving full body instead of %r",
                media_url,
                range_header,
            )
            return await self.full_relay(media_url, on_event=on_event)

        if declared_size is not None and declared_size != probe.total_size:
            LOG.debug(
                "declared size %d differs from probed size %d for %s",
                declared_size,
                probe.total_size,
                media_url,
            )

        spec = parse_range(range_header, probe.total_size)
        return await self._range_relay(media_url, spec, probe, on_event=on_event)

    async def probe(self, media_url: str) -> ProbeResult | None:
        """Learn the total size and content type of ``media_url``.

        Tries ``HEAD`` first and falls back to a one byte ranged ``GET`` for
        servers that refuse ``HEAD``. Returns ``None`` when neither yields a
        size.
        """
        try:
            response = await self._client.head(
                media_url,
                headers={"Accept-Encoding": "identity"},
                timeout=self._probe_timeout,
            )
            if response.is_success:
                size = _int_header(response.headers, "content-length")
                if size is not None:
                    return ProbeResult(size, response.headers.get("content-type"))
            LOG.debug(
                "HEAD probe of %s gave status=%s without a size, trying ranged GET",
                media_url,
                response.status_code,
            )
            return await self._probe_with_get(media_url)
        except httpx.HTTPError as error:
            LOG.warning("probe of %s failed: %r", media_url, error)
            return None

    async def _probe_with_get(self, media_url: str) -> ProbeResult | None:
        async with self._client.stream(
            "GET",
            media_url,
            headers={"Range": "bytes=0-0", "Accept-Encoding": "identity"},
            timeout=self._probe_timeout,
        ) as response:
            if response.status_code == 206:
                size = total_from_content_range(response.headers.get("content-range"))
            elif response.status_code == 200:
                size = _int_header(response.headers, "content-length")
            else:
                size = None
            if size is None:
                return None
            return ProbeResult(size, response.headers.get("content-type"))

    async def full_relay(
        self,
        media_url: str,
        *,
        timeout: float | None = None,
        extra_headers: Mapping[str, str] | None = None,
        accept_ranges: bool = True,
        on_event: EventCallback | None = None,
    ) -> RelayResponse:
        upstream = await self._open(media_url, timeout=timeout or self._fetch_timeout)
        headers = {"Cache-Control": "no-cache"}
        if accept_ranges:
            headers["Accept-Ranges"] = "bytes"
        for name in ("Content-Length", "Content-Type"):
            value = upstream.headers.get(name)
            if value is not None:
                headers[name] = value
        if extra_headers:
            headers.update(extra_headers)

        LOG.debug(
            "full relay of %s (length=%s)",
            media_url,
            headers.get("Content-Length", "unknown"),
        )
        session = StreamSession(
            upstream, chunk_size=self._chunk_size, on_event=on_event
        )
        return RelayResponse(session, status_code=200, headers=headers)

    async def _range_relay(
        self,
        media_url: str,
        spec: RangeSpec,
        probe: ProbeResult,
        *,
        on_event: EventCallback | None = None,
    ) -> RelayResponse:
        upstream = await self._open(
            media_url,
            timeout=self._fetch_timeout,
            headers={"Range": spec.header()},
        )
        skip = 0
        if upstream.status_code == 200:
            LOG.info(
                "upstream %s ignored range %s, slicing the full body",
                media_url,
                spec.header(),
            )
            skip = spec.start
        elif upstream.status_code != 206:
            await upstream.aclose()
            msg = f"Unexpected status {upstream.status_code} for ranged fetch"
            raise UpstreamUnavailable(msg)
        else:
            served = span_from_content_range(upstream.headers.get("content-range"))
            if served != (spec.start, spec.end):
                await upstream.aclose()
                LOG.warning(
                    "upstream %s answered range %s with content-range %r",
                    media_url,
                    spec.header(),
                    upstream.headers.get("content-range"),
                )
                msg = f"Upstream served a different span than {spec.header()}"
                raise UpstreamUnavailable(msg)

        LOG.debug(
            "range relay of %s bytes %d-%d/%d",
            media_url,
            spec.start,
            spec.end,
            probe.total_size,
        )
        session = StreamSession(
            upstream,
            chunk_size=self._chunk_size,
            skip=skip,
            limit=spec.length,
            on_event=on_event,
        )
        headers = {
            "Content-Range": spec.content_range(probe.total_size),
            "Content-Length": str(spec.length),
            "Accept-Ranges": "bytes",
            "Content-Type": probe.content_type or DEFAULT_CONTENT_TYPE,
            "Cache-Control": "no-cache",
        }
        return RelayResponse(session, status_code=206, headers=headers)

    async def _open(
        self,
        media_url: str,
        *,
        timeout: float,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        request = self._client.build_request(
            "GET",
            media_url,
            headers={"Accept-Encoding": "identity", **(headers or {})},
            timeout=timeout,
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as error:
            LOG.warning("media fetch of %s timed out", media_url)
            msg = f"Media fetch timed out after {timeout:g}s"
            raise UpstreamTimeout(msg) from error
        except httpx.HTTPError as error:
            LOG.warning("media fetch of %s failed: %s", media_url, error)
            msg = f"Media fetch failed: {error}"
            raise UpstreamUnavailable(msg) from error

        if not response.is_success:
            await response.aclose()
            LOG.warning(
                "media fetch of %s returned status %s", media_url, response.status_code
            )
            msg = f"Media fetch returned status {response.status_code}"
            raise UpstreamUnavailable(msg)
        return response
