"""Format resolution on top of yt-dlp.

The extraction options are built once per process and shared by every
request. Each stream request opens its own yt-dlp handle and performs its
own extraction: signed origin URLs expire and format availability shifts
between calls, so nothing here is cached.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

import yt_dlp

from services.common.logging_utils import log_timing

from .errors import ExtractionFailure
from .formats import (
    DEFAULT_MAX_VIDEO_HEIGHT,
    FormatDescriptor,
    TrackKind,
    parse_formats,
    select_format,
)

log = logging.getLogger("ytfree-streamer.extraction")

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
DEFAULT_PLAYER_CLIENTS = ("android", "web")

# Lower-cased substrings of yt-dlp error text, checked in order.
_FAILURE_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("age_restricted", ("confirm your age", "age-restricted", "age restricted")),
    ("bot_check", ("not a bot", "sign in to confirm", "captcha")),
    (
        "unavailable",
        (
            "video unavailable",
            "private video",
            "has been removed",
            "not available in your country",
            "blocked it in your country",
            "this video is not available",
        ),
    ),
    (
        "network",
        (
            "unable to download",
            "timed out",
            "connection",
            "name resolution",
            "network is unreachable",
        ),
    ),
)


def classify_extraction_error(err: BaseException) -> str:
    """Map a yt-dlp failure to a coarse reason used for logging."""
    message = str(err).lower()
    for reason, markers in _FAILURE_MARKERS:
        if any(marker in message for marker in markers):
            return reason
    return "unknown"


class YtDlpExtractionProvider:
    """Lists formats for a video through a per-call yt-dlp handle.

    A YoutubeDL instance keeps per-download state and is not safe to share
    across worker threads, so only the options dict is process-wide.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        player_clients: Sequence[str] = DEFAULT_PLAYER_CLIENTS,
    ):
        self.user_agent = user_agent
        self.player_clients = list(player_clients)
        self._options: Optional[dict[str, Any]] = None

    def build_options(self) -> dict[str, Any]:
        return {
            "quiet": True,
            "no_warnings": True,
            "nocheckcertificate": True,
            "skip_download": True,
            "http_headers": {
                "User-Agent": self.user_agent,
                "Accept-Language": "en-US,en;q=0.9",
            },
            # Impersonated player clients get past the datacenter-IP
            # "Sign in to confirm you're not a bot" wall more often.
            "extractor_args": {
                "youtube": {
                    "player_client": self.player_clients,
                },
            },
        }

    @property
    def options(self) -> dict[str, Any]:
        if self._options is None:
            self._options = self.build_options()
        return self._options

    def extract(self, video_id: str) -> dict[str, Any]:
        """Fetch raw metadata for one video (blocking)."""
        url = WATCH_URL.format(video_id=video_id)
        try:
            with yt_dlp.YoutubeDL(self.options) as ydl:
                info = ydl.extract_info(url, download=False)
        except Exception as e:
            reason = classify_extraction_error(e)
            raise ExtractionFailure(str(e), video_id=video_id, reason=reason) from e

        if not isinstance(info, dict) or not info:
            raise ExtractionFailure("No info extracted", video_id=video_id, reason="malformed")
        return info


class FormatResolver:
    """Resolve and select the format to relay for a stream request."""

    def __init__(
        self,
        provider: YtDlpExtractionProvider,
        *,
        max_video_height: int = DEFAULT_MAX_VIDEO_HEIGHT,
    ):
        self.provider = provider
        self.max_video_height = max_video_height

    @log_timing(log, "yt-dlp format extraction")
    async def resolve(self, video_id: str) -> list[FormatDescriptor]:
        """List the formats currently offered for ``video_id``."""
        info = await asyncio.to_thread(self.provider.extract, video_id)

        raw_formats = info.get("formats")
        if not isinstance(raw_formats, list) or not raw_formats:
            raise ExtractionFailure(
                "No formats returned for video",
                video_id=video_id,
                reason="malformed",
            )
        return parse_formats(raw_formats)

    async def resolve_selected(self, video_id: str, kind: TrackKind) -> FormatDescriptor:
        formats = await self.resolve(video_id)
        return select_format(
            formats,
            kind,
            max_height=self.max_video_height,
            video_id=video_id,
        )
