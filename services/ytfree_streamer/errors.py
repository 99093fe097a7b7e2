"""Failure taxonomy for the stream pipeline.

Every error carries a message that is safe to show to the user; the route
boundary turns any of them into ``500 {"error": "Failed to stream: ..."}``.
"""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for failures raised while resolving or relaying a stream."""

    def __init__(self, message: str, *, video_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.video_id = video_id


class ExtractionFailure(StreamError):
    """yt-dlp could not produce usable metadata for a video."""

    def __init__(
        self,
        message: str,
        *,
        video_id: Optional[str] = None,
        reason: str = "unknown",
    ):
        super().__init__(message, video_id=video_id)
        self.reason = reason


class NoPlayableFormat(StreamError):
    """Formats were listed but none passes the selection policy."""

    def __init__(self, message: str = "No playable stream found", *, video_id: Optional[str] = None):
        super().__init__(message, video_id=video_id)


class OriginUnreachable(StreamError):
    """The CDN origin could not be connected to, or timed out."""


class OriginRejected(StreamError):
    """The CDN origin answered with a non-success status."""

    def __init__(self, status_code: int, *, video_id: Optional[str] = None):
        super().__init__(f"YouTube returned status {status_code}", video_id=video_id)
        self.status_code = status_code


class StreamInterrupted(StreamError):
    """The origin dropped after the response was already committed."""
