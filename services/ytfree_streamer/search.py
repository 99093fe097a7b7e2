"""Video search through yt-dlp flat extraction."""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Callable, Optional

import yt_dlp

log = logging.getLogger("ytfree-streamer.search")

DEFAULT_RESULT_LIMIT = 20


def _parse_duration_text_value(value: Any) -> int:
    """
    Parse "mm:ss" or "hh:mm:ss" duration strings to seconds.
    Returns 0 when missing/invalid.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value) if math.isfinite(value) and value > 0 else 0
    text = str(value or "").strip()
    if ":" not in text:
        return 0
    parts = text.split(":")
    try:
        parts_int = [int(p) for p in parts]
    except ValueError:
        return 0
    if len(parts_int) == 3:
        return parts_int[0] * 3600 + parts_int[1] * 60 + parts_int[2]
    if len(parts_int) == 2:
        return parts_int[0] * 60 + parts_int[1]
    return 0


_VIEW_SUFFIXES = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def _parse_view_count(value: Any) -> int:
    """Parse "1.2M", "35K views" or "1,234" into an integer count."""
    if isinstance(value, int) and not isinstance(value, bool):
        return max(value, 0)
    text = str(value or "").strip().lower().replace(",", "")
    match = re.match(r"^([\d.]+)\s*([kmb])?", text)
    if not match:
        return 0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0
    return int(round(number * _VIEW_SUFFIXES.get(match.group(2) or "", 1)))


def _best_thumbnail(item: dict) -> list[dict]:
    thumbnails = item.get("thumbnails")
    if isinstance(thumbnails, list):
        # yt-dlp lists thumbnails smallest first
        for thumb in reversed(thumbnails):
            if isinstance(thumb, dict) and thumb.get("url"):
                return [{"url": str(thumb["url"]), "quality": "high"}]
    if item.get("thumbnail"):
        return [{"url": str(item["thumbnail"]), "quality": "high"}]
    return []


def normalize_video_result(item: Any) -> Optional[dict]:
    """Map one flat yt-dlp search entry to the shape the player frontend expects."""
    if not isinstance(item, dict):
        return None

    video_id = str(item.get("id") or "").strip()
    if not video_id:
        return None

    author = "Unknown"
    for key in ("channel", "uploader"):
        name = str(item.get(key) or "").strip()
        if name:
            author = name
            break

    return {
        "type": "video",
        "videoId": video_id,
        "title": str(item.get("title") or "").strip() or "Unknown",
        "author": author,
        "lengthSeconds": _parse_duration_text_value(item.get("duration")),
        "viewCount": _parse_view_count(item.get("view_count")),
        "videoThumbnails": _best_thumbnail(item),
    }


class VideoSearch:
    """Search all of YouTube through yt-dlp's ``ytsearch`` extractor.

    Flat extraction returns one lightweight entry per hit without resolving
    formats, so a search costs a single results-page request. A fresh
    YoutubeDL handle is opened per search; only the options are shared.
    """

    def __init__(
        self,
        *,
        limit: int = DEFAULT_RESULT_LIMIT,
        user_agent: Optional[str] = None,
        ydl_factory: Callable[[dict], Any] = yt_dlp.YoutubeDL,
    ):
        self.limit = limit
        self.user_agent = user_agent
        self._ydl_factory = ydl_factory

    def build_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "extract_flat": True,
        }
        if self.user_agent:
            options["http_headers"] = {"User-Agent": self.user_agent}
        return options

    def search(self, query: str) -> list[dict]:
        """Run a search (blocking)."""
        with self._ydl_factory(self.build_options()) as ydl:
            info = ydl.extract_info(f"ytsearch{self.limit}:{query}", download=False)

        entries = info.get("entries") if isinstance(info, dict) else None
        if not isinstance(entries, list):
            log.debug(f"Search for {query!r} returned no entries")
            return []

        results: list[dict] = []
        for item in entries:
            mapped = normalize_video_result(item)
            if mapped:
                results.append(mapped)
        return results[: self.limit]
