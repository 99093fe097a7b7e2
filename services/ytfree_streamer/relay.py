"""Relay a selected format's bytes from the CDN origin to the client.

The origin response is opened (and its status checked) before anything is
sent downstream, so rejections still produce a clean JSON error. After that
the body is piped chunk by chunk; the upstream connection is released when
the body ends, when the origin drops, or when the client goes away.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

import anyio
import httpx
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from .errors import OriginRejected, OriginUnreachable, StreamInterrupted
from .formats import CONTENT_TYPES, FormatDescriptor, TrackKind

log = logging.getLogger("ytfree-streamer.relay")

DEFAULT_CHUNK_SIZE = 65536
FORWARDED_HEADERS = ("content-length", "content-range", "accept-ranges")


def build_origin_headers(user_agent: str, range_header: Optional[str]) -> dict[str, str]:
    headers = {
        "User-Agent": user_agent,
        "Accept": "*/*",
    }
    if range_header:
        headers["Range"] = range_header
    return headers


def relay_headers(upstream: httpx.Response) -> dict[str, str]:
    """Copy only the range/length headers from the origin response."""
    headers: dict[str, str] = {}
    for name in FORWARDED_HEADERS:
        value = upstream.headers.get(name)
        if value:
            headers[name] = value
    return headers


class OriginStream:
    """An open origin response plus the client that owns its connection."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream: httpx.Response,
        *,
        video_id: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.client = client
        self.upstream = upstream
        self.video_id = video_id
        self.chunk_size = chunk_size
        self.bytes_sent = 0

    @property
    def status_code(self) -> int:
        return self.upstream.status_code

    async def body(self) -> AsyncIterator[bytes]:
        # Raw bytes, so the forwarded Content-Length stays accurate.
        try:
            async for chunk in self.upstream.aiter_raw(self.chunk_size):
                self.bytes_sent += len(chunk)
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            log.warning(
                "Origin dropped mid-stream for %s after %d bytes: %s",
                self.video_id,
                self.bytes_sent,
                e,
            )
            raise StreamInterrupted(
                f"Origin connection lost after {self.bytes_sent} bytes",
                video_id=self.video_id,
            ) from e
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        # Shielded: a client disconnect cancels the task mid-cleanup.
        with anyio.CancelScope(shield=True):
            await self.upstream.aclose()
            await self.client.aclose()


async def open_origin(
    client: httpx.AsyncClient,
    selected: FormatDescriptor,
    *,
    user_agent: str,
    range_header: Optional[str] = None,
    video_id: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> OriginStream:
    """Send the origin request and check its status.

    Takes ownership of ``client``: it is closed here on failure, or by the
    returned OriginStream once the body is done.
    """
    try:
        request = client.build_request(
            "GET",
            selected.origin_url,
            headers=build_origin_headers(user_agent, range_header),
        )
        upstream = await client.send(request, stream=True)
    except (httpx.TransportError, httpx.InvalidURL) as e:
        await client.aclose()
        raise OriginUnreachable(
            f"Could not reach origin: {e.__class__.__name__}",
            video_id=video_id,
        ) from e
    except BaseException:
        with anyio.CancelScope(shield=True):
            await client.aclose()
        raise

    if not upstream.is_success and upstream.status_code != 206:
        await upstream.aclose()
        await client.aclose()
        raise OriginRejected(upstream.status_code, video_id=video_id)

    return OriginStream(client, upstream, video_id=video_id, chunk_size=chunk_size)


class RelayResponse(StreamingResponse):
    """StreamingResponse that always releases its origin connection.

    A client disconnect cancels or errors the send loop without closing the
    body iterator, so the origin is closed here as well.
    """

    def __init__(self, origin: OriginStream, kind: TrackKind):
        self.origin = origin
        super().__init__(
            origin.body(),
            status_code=origin.status_code,
            headers=relay_headers(origin.upstream),
            media_type=CONTENT_TYPES[kind],
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.origin.aclose()


async def relay(
    client: httpx.AsyncClient,
    selected: FormatDescriptor,
    kind: TrackKind,
    *,
    user_agent: str,
    range_header: Optional[str] = None,
    video_id: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> RelayResponse:
    origin = await open_origin(
        client,
        selected,
        user_agent=user_agent,
        range_header=range_header,
        video_id=video_id,
        chunk_size=chunk_size,
    )
    log.debug(
        "Origin answered %d for %s (range=%r)",
        origin.status_code,
        video_id,
        range_header,
    )
    return RelayResponse(origin, kind)
