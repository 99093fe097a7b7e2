import asyncio
import threading

import pytest
import yt_dlp

from services.ytfree_streamer import extraction
from services.ytfree_streamer.errors import ExtractionFailure, NoPlayableFormat
from services.ytfree_streamer.extraction import (
    FormatResolver,
    YtDlpExtractionProvider,
    classify_extraction_error,
)


class _FakeYoutubeDL:
    instances: list["_FakeYoutubeDL"] = []
    result = None
    error = None

    def __init__(self, params):
        self.params = params
        self.urls: list[str] = []
        self.closed = False
        _FakeYoutubeDL.instances.append(self)

    def extract_info(self, url, download=True):
        assert download is False
        self.urls.append(url)
        if _FakeYoutubeDL.error is not None:
            raise _FakeYoutubeDL.error
        return _FakeYoutubeDL.result

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@pytest.fixture
def fake_ydl(monkeypatch: pytest.MonkeyPatch):
    _FakeYoutubeDL.instances = []
    _FakeYoutubeDL.result = {"formats": []}
    _FakeYoutubeDL.error = None
    monkeypatch.setattr(extraction.yt_dlp, "YoutubeDL", _FakeYoutubeDL)
    return _FakeYoutubeDL


@pytest.mark.parametrize(
    "message, reason",
    [
        ("ERROR: [youtube] x: Sign in to confirm your age", "age_restricted"),
        ("ERROR: [youtube] x: Sign in to confirm you're not a bot", "bot_check"),
        ("ERROR: [youtube] x: Video unavailable", "unavailable"),
        ("ERROR: [youtube] x: Private video", "unavailable"),
        ("ERROR: Unable to download API page: timed out", "network"),
        ("ERROR: something new and strange", "unknown"),
    ],
)
def test_classify_extraction_error(message, reason) -> None:
    assert classify_extraction_error(yt_dlp.utils.DownloadError(message)) == reason


def test_provider_opens_a_handle_per_extraction(fake_ydl) -> None:
    provider = YtDlpExtractionProvider(user_agent="UA", player_clients=["android", "web"])

    provider.extract("a")
    provider.extract("b")

    assert [ydl.urls for ydl in fake_ydl.instances] == [
        ["https://www.youtube.com/watch?v=a"],
        ["https://www.youtube.com/watch?v=b"],
    ]
    assert all(ydl.closed for ydl in fake_ydl.instances)
    assert fake_ydl.instances[0].params is fake_ydl.instances[1].params


def test_provider_options_impersonate_player_clients(fake_ydl) -> None:
    provider = YtDlpExtractionProvider(user_agent="UA", player_clients=["android", "web"])

    provider.extract("a")

    params = fake_ydl.instances[0].params
    assert params["extractor_args"]["youtube"]["player_client"] == ["android", "web"]
    assert params["http_headers"]["User-Agent"] == "UA"
    assert params["quiet"] is True


def test_provider_wraps_ytdlp_errors(fake_ydl) -> None:
    fake_ydl.error = yt_dlp.utils.DownloadError("ERROR: [youtube] a: Video unavailable")
    provider = YtDlpExtractionProvider(user_agent="UA")

    with pytest.raises(ExtractionFailure) as excinfo:
        provider.extract("a")

    assert excinfo.value.reason == "unavailable"
    assert excinfo.value.video_id == "a"
    assert "Video unavailable" in excinfo.value.message


def test_provider_rejects_empty_info(fake_ydl) -> None:
    fake_ydl.result = None
    provider = YtDlpExtractionProvider(user_agent="UA")

    with pytest.raises(ExtractionFailure) as excinfo:
        provider.extract("a")

    assert excinfo.value.reason == "malformed"


def test_provider_closes_handle_when_extraction_fails(fake_ydl) -> None:
    fake_ydl.error = yt_dlp.utils.DownloadError("ERROR: something new and strange")
    provider = YtDlpExtractionProvider(user_agent="UA")

    with pytest.raises(ExtractionFailure):
        provider.extract("a")

    assert fake_ydl.instances[0].closed


def test_parallel_resolves_never_share_a_handle(fake_ydl, monkeypatch: pytest.MonkeyPatch) -> None:
    # Both extractions must be in flight at once to get past the barrier.
    barrier = threading.Barrier(2, timeout=5)

    class _OverlappingYoutubeDL(_FakeYoutubeDL):
        def extract_info(self, url, download=True):
            barrier.wait()
            self.urls.append(url)
            return {"formats": [{"format_id": url[-1]}]}

    monkeypatch.setattr(extraction.yt_dlp, "YoutubeDL", _OverlappingYoutubeDL)
    resolver = FormatResolver(YtDlpExtractionProvider(user_agent="UA"))

    async def resolve_both():
        return await asyncio.gather(resolver.resolve("a"), resolver.resolve("b"))

    first, second = asyncio.run(resolve_both())

    assert [f.format_id for f in first] == ["a"]
    assert [f.format_id for f in second] == ["b"]
    assert len(fake_ydl.instances) == 2
    assert sorted(len(ydl.urls) for ydl in fake_ydl.instances) == [1, 1]
    assert all(ydl.closed for ydl in fake_ydl.instances)


class _StaticProvider:
    def __init__(self, info):
        self.info = info

    def extract(self, video_id):
        return self.info


@pytest.mark.parametrize("info", [{}, {"formats": None}, {"formats": []}, {"formats": "nope"}])
def test_resolve_without_formats_is_extraction_failure(info) -> None:
    resolver = FormatResolver(_StaticProvider(info))

    with pytest.raises(ExtractionFailure) as excinfo:
        asyncio.run(resolver.resolve("abc123"))

    assert excinfo.value.reason == "malformed"


def test_resolve_keeps_provider_order() -> None:
    resolver = FormatResolver(
        _StaticProvider({"formats": [{"format_id": "b"}, {"format_id": "a"}]})
    )

    formats = asyncio.run(resolver.resolve("abc123"))

    assert [f.format_id for f in formats] == ["b", "a"]


def test_resolve_selected_uses_configured_ceiling() -> None:
    resolver = FormatResolver(
        _StaticProvider(
            {
                "formats": [
                    {"format_id": "18", "vcodec": "avc1", "acodec": "mp4a", "height": 360, "url": "u18"},
                    {"format_id": "22", "vcodec": "avc1", "acodec": "mp4a", "height": 720, "url": "u22"},
                ]
            }
        ),
        max_video_height=480,
    )

    chosen = asyncio.run(resolver.resolve_selected("abc123", "video"))

    assert chosen.format_id == "18"


def test_resolve_selected_reports_no_playable_format() -> None:
    resolver = FormatResolver(_StaticProvider({"formats": [{"format_id": "sb0"}]}))

    with pytest.raises(NoPlayableFormat) as excinfo:
        asyncio.run(resolver.resolve_selected("abc123", "audio"))

    assert excinfo.value.video_id == "abc123"
