"""Format descriptors reported by yt-dlp and the policy that picks one."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Optional, Sequence

from .errors import NoPlayableFormat

TrackKind = Literal["video", "audio"]

NO_CODEC = "none"
DEFAULT_MAX_VIDEO_HEIGHT = 720

# Policy defaults, never sniffed from the origin.
CONTENT_TYPES: dict[str, str] = {
    "video": "video/mp4",
    "audio": "audio/webm",
}


def normalize_track_kind(value: Optional[str]) -> TrackKind:
    """Anything other than an explicit "audio" streams video."""
    if value == "audio":
        return "audio"
    return "video"


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value if isinstance(value, (int, float)) else str(value).strip())
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(number, 0.0)


def _as_int(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return max(value, 0)
    return int(_as_float(value))


def _as_codec(value: Any) -> str:
    text = str(value or "").strip()
    return text or NO_CODEC


@dataclass(frozen=True)
class FormatDescriptor:
    """One deliverable encoding of a video."""

    format_id: str = ""
    video_codec: str = NO_CODEC
    audio_codec: str = NO_CODEC
    height: int = 0
    audio_bitrate: float = 0.0
    extension: str = ""
    origin_url: str = ""

    @classmethod
    def from_ytdlp(cls, raw: Any) -> "FormatDescriptor":
        """Build a descriptor from one yt-dlp ``formats`` entry.

        Nothing in the entry is trusted to be present or well typed: numbers
        fall back to 0 and codecs to ``"none"``.
        """
        if not isinstance(raw, dict):
            return cls()
        return cls(
            format_id=str(raw.get("format_id") or ""),
            video_codec=_as_codec(raw.get("vcodec")),
            audio_codec=_as_codec(raw.get("acodec")),
            height=_as_int(raw.get("height")),
            audio_bitrate=_as_float(raw.get("abr")),
            extension=str(raw.get("ext") or ""),
            origin_url=str(raw.get("url") or ""),
        )

    @property
    def has_video(self) -> bool:
        return self.video_codec != NO_CODEC

    @property
    def has_audio(self) -> bool:
        return self.audio_codec != NO_CODEC

    @property
    def is_muxed(self) -> bool:
        return self.has_video and self.has_audio


def parse_formats(raw_formats: Iterable[Any]) -> list[FormatDescriptor]:
    """Parse yt-dlp format entries, keeping provider order."""
    return [FormatDescriptor.from_ytdlp(raw) for raw in raw_formats]


def _highest(candidates: Sequence[FormatDescriptor], key) -> Optional[FormatDescriptor]:
    # max() keeps the first of equal maxima, so provider order breaks ties.
    if not candidates:
        return None
    return max(candidates, key=key)


def select_audio_format(formats: Sequence[FormatDescriptor]) -> Optional[FormatDescriptor]:
    """Best audio-only format by average bitrate."""
    audio_only = [f for f in formats if f.has_audio and not f.has_video]
    return _highest(audio_only, key=lambda f: f.audio_bitrate)


def select_video_format(
    formats: Sequence[FormatDescriptor],
    max_height: int = DEFAULT_MAX_VIDEO_HEIGHT,
) -> Optional[FormatDescriptor]:
    """Tallest muxed format under the ceiling, else the tallest video-only one."""
    muxed = [f for f in formats if f.is_muxed and f.height <= max_height]
    chosen = _highest(muxed, key=lambda f: f.height)
    if chosen is not None:
        return chosen

    with_video = [f for f in formats if f.has_video and f.height <= max_height]
    return _highest(with_video, key=lambda f: f.height)


def select_format(
    formats: Sequence[FormatDescriptor],
    kind: TrackKind,
    *,
    max_height: int = DEFAULT_MAX_VIDEO_HEIGHT,
    video_id: Optional[str] = None,
) -> FormatDescriptor:
    """Apply the selection policy for ``kind``.

    Raises NoPlayableFormat when nothing qualifies or when the winner has no
    origin URL to relay from.
    """
    if kind == "audio":
        chosen = select_audio_format(formats)
    else:
        chosen = select_video_format(formats, max_height=max_height)

    if chosen is None or not chosen.origin_url:
        raise NoPlayableFormat(video_id=video_id)
    return chosen
