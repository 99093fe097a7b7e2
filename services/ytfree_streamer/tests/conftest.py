from typing import Any, Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from services.ytfree_streamer.app import (
    app,
    get_format_resolver,
    get_origin_client_factory,
)
from services.ytfree_streamer.extraction import FormatResolver


class FakeExtractionProvider:
    """Stands in for the yt-dlp provider and records every extraction."""

    def __init__(self, info: Optional[dict] = None, error: Optional[Exception] = None):
        self.info = info if info is not None else {"formats": []}
        self.error = error
        self.calls: list[str] = []

    def extract(self, video_id: str) -> dict[str, Any]:
        self.calls.append(video_id)
        if self.error is not None:
            raise self.error
        return self.info


@pytest.fixture
def provider() -> FakeExtractionProvider:
    return FakeExtractionProvider()


@pytest.fixture
def origin_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def origin_handler() -> dict[str, Callable[[httpx.Request], httpx.Response]]:
    """Mutable slot holding the handler the fake CDN origin answers with."""
    return {
        "handler": lambda request: httpx.Response(200, content=b""),
    }


@pytest.fixture
def client(provider, origin_requests, origin_handler):
    def handle(request: httpx.Request) -> httpx.Response:
        origin_requests.append(request)
        return origin_handler["handler"](request)

    def origin_client_factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handle))

    app.dependency_overrides[get_format_resolver] = lambda: FormatResolver(provider)
    app.dependency_overrides[get_origin_client_factory] = lambda: origin_client_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

