"""
YTFree Streamer: FastAPI backend for the YTFree player.

Uses `yt-dlp` to list the delivery formats of a YouTube video, picks one
with a fixed selection policy, and proxies its bytes from YouTube's CDN
through this service (range requests included) so the browser never talks
to the CDN directly. Search goes through yt-dlp's `ytsearch` flat
extraction. Nothing is saved to disk and stream bytes are never cached.
"""

import asyncio
import os
from typing import Callable, Optional

import httpx
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from services.common.logging_utils import configure_service_logger
from services.common.sidecar_runtime_utils import (
    build_stream_proxy_client,
    env_float,
    env_int,
    env_list,
    stream_proxy_timeout,
)

from .errors import (
    ExtractionFailure,
    NoPlayableFormat,
    OriginRejected,
    OriginUnreachable,
    StreamError,
)
from .extraction import FormatResolver, YtDlpExtractionProvider
from .formats import normalize_track_kind
from .relay import relay
from .search import VideoSearch

# ── Logging ─────────────────────────────────────────────────────────
log = configure_service_logger("ytfree-streamer")

# ── FastAPI app ─────────────────────────────────────────────────────
app = FastAPI(title="YTFree Streamer", version="2.0.0")

# ── Configuration ───────────────────────────────────────────────────
HOST = os.getenv("HOST", "0.0.0.0")
PORT = env_int("PORT", "3000")

# Height ceiling for video selection; keeps proxy throughput predictable.
MAX_VIDEO_HEIGHT = env_int("STREAM_MAX_VIDEO_HEIGHT", "720")
STREAM_CHUNK_SIZE = env_int("STREAM_CHUNK_SIZE", "65536")
STREAM_CONNECT_TIMEOUT = env_float("STREAM_CONNECT_TIMEOUT", "30")
STREAM_READ_TIMEOUT = env_float("STREAM_READ_TIMEOUT", "300")

# yt-dlp player clients to impersonate during extraction.
PLAYER_CLIENTS = env_list("YTDLP_PLAYER_CLIENTS", "android,web")
SEARCH_RESULT_LIMIT = env_int("SEARCH_RESULT_LIMIT", "20")

# The CDN rejects requests without a recognised browser signature.
_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)


# ════════════════════════════════════════════════════════════════════
# Dependencies
# ════════════════════════════════════════════════════════════════════

def get_extraction_provider(request: Request) -> YtDlpExtractionProvider:
    """Return the process-wide yt-dlp provider, building it on first use."""
    provider = getattr(request.app.state, "extraction_provider", None)
    if provider is None:
        provider = YtDlpExtractionProvider(
            user_agent=_USER_AGENT,
            player_clients=PLAYER_CLIENTS,
        )
        request.app.state.extraction_provider = provider
    return provider


def get_format_resolver(
    provider: YtDlpExtractionProvider = Depends(get_extraction_provider),
) -> FormatResolver:
    return FormatResolver(provider, max_video_height=MAX_VIDEO_HEIGHT)


def _build_origin_client() -> httpx.AsyncClient:
    return build_stream_proxy_client(
        user_agent=_USER_AGENT,
        timeout=stream_proxy_timeout(STREAM_CONNECT_TIMEOUT, STREAM_READ_TIMEOUT),
    )


def get_origin_client_factory() -> Callable[[], httpx.AsyncClient]:
    """Factory for the per-request client used to reach the CDN origin."""
    return _build_origin_client


def get_video_search(request: Request) -> VideoSearch:
    searcher = getattr(request.app.state, "video_search", None)
    if searcher is None:
        searcher = VideoSearch(limit=SEARCH_RESULT_LIMIT, user_agent=_USER_AGENT)
        request.app.state.video_search = searcher
    return searcher


def _log_stream_failure(err: StreamError, video_id: str):
    """Each failure kind gets its own log line so they can be told apart."""
    if isinstance(err, ExtractionFailure):
        log.error(f"[Stream] Extraction failed for {video_id} (reason={err.reason}): {err.message}")
    elif isinstance(err, NoPlayableFormat):
        log.warning(f"[Stream] No playable format for {video_id}")
    elif isinstance(err, OriginRejected):
        log.error(f"[Stream] Origin rejected {video_id} with status {err.status_code}")
    elif isinstance(err, OriginUnreachable):
        log.error(f"[Stream] Origin unreachable for {video_id}: {err.message}")
    else:
        log.error(f"[Stream] Failed for {video_id}: {err.message}")


def _stream_error_response(message: str) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": f"Failed to stream: {message}"})


# ════════════════════════════════════════════════════════════════════
# Routes
# ════════════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "ytfree-streamer",
        "max_video_height": MAX_VIDEO_HEIGHT,
        "player_clients": PLAYER_CLIENTS,
    }


# ── Search ──────────────────────────────────────────────────────────

@app.get("/api/search")
async def search(
    q: str = "",
    searcher: VideoSearch = Depends(get_video_search),
):
    """Search videos; an empty query returns an empty list."""
    query = q.strip()
    if not query:
        return []

    log.info(f"[Search] Query: {query!r}")
    try:
        return await asyncio.to_thread(searcher.search, query)
    except Exception as e:
        log.error(f"[Search] Failed for query={query!r}: {e}")
        return JSONResponse(status_code=500, content={"error": str(e)})


# ── Streaming ───────────────────────────────────────────────────────

@app.get("/api/stream")
async def stream(
    request: Request,
    video_id: Optional[str] = Query(None, alias="id"),
    track_type: Optional[str] = Query(None, alias="type"),
    resolver: FormatResolver = Depends(get_format_resolver),
    client_factory: Callable[[], httpx.AsyncClient] = Depends(get_origin_client_factory),
):
    """
    Proxy a video or audio stream from YouTube's CDN.

    CDN URLs are signed and IP-locked to this server, so the browser cannot
    fetch them itself. The inbound Range header is forwarded as-is and the
    origin's status (200/206), Content-Length, Content-Range and
    Accept-Ranges are mirrored back. If the origin ignores the range and
    answers 200, the full body is passed through unchanged.
    """
    if not video_id:
        return JSONResponse(status_code=400, content={"error": "Missing video ID"})

    kind = normalize_track_kind(track_type)
    log.info(f"[Stream] Proxying {kind} for {video_id} via yt-dlp...")

    try:
        selected = await resolver.resolve_selected(video_id, kind)
        log.info(f"[Stream] Format selected: {selected.format_id} ({selected.extension})")

        return await relay(
            client_factory(),
            selected,
            kind,
            user_agent=_USER_AGENT,
            range_header=request.headers.get("range"),
            video_id=video_id,
            chunk_size=STREAM_CHUNK_SIZE,
        )
    except StreamError as e:
        _log_stream_failure(e, video_id)
        return _stream_error_response(e.message)
    except Exception as e:
        log.exception(f"[Stream] Unexpected failure for {video_id}")
        return _stream_error_response(str(e))


# ── Lifecycle ───────────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    log.info("YTFree Streamer starting up")
    log.info(
        f"Stream config: max_video_height={MAX_VIDEO_HEIGHT}, "
        f"chunk_size={STREAM_CHUNK_SIZE}, "
        f"timeouts={STREAM_CONNECT_TIMEOUT}/{STREAM_READ_TIMEOUT}s, "
        f"player_clients={','.join(PLAYER_CLIENTS)}"
    )


@app.on_event("shutdown")
async def shutdown():
    app.state.extraction_provider = None
    app.state.video_search = None
    log.info("YTFree Streamer shutting down")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)
