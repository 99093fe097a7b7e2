"""Shared runtime helpers for Python sidecar services."""

from __future__ import annotations

import os
from typing import Optional

import httpx

DEFAULT_STREAM_CONNECT_TIMEOUT = 30.0
DEFAULT_STREAM_READ_TIMEOUT = 300.0


def env_int(name: str, default: str) -> int:
    """Parse an integer env var using a string default value."""
    return int(os.getenv(name, default))


def env_float(name: str, default: str) -> float:
    """Parse a float env var using a string default value."""
    return float(os.getenv(name, default))


def env_list(name: str, default: str) -> list[str]:
    """Parse a comma-separated env var, dropping blank entries."""
    raw = os.getenv(name, default) or default
    return [part.strip() for part in raw.split(",") if part.strip()]


def stream_proxy_timeout(
    connect: float = DEFAULT_STREAM_CONNECT_TIMEOUT,
    read: float = DEFAULT_STREAM_READ_TIMEOUT,
) -> httpx.Timeout:
    """Return the timeout for sidecar upstream stream requests."""
    return httpx.Timeout(connect, read=read)


def build_stream_proxy_client(
    user_agent: Optional[str] = None,
    *,
    timeout: Optional[httpx.Timeout] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Build an AsyncClient with sidecar stream timeout defaults."""
    client_kwargs = {"timeout": timeout or stream_proxy_timeout()}
    if user_agent is not None:
        client_kwargs["headers"] = {"User-Agent": user_agent}
    if transport is not None:
        client_kwargs["transport"] = transport
    return httpx.AsyncClient(**client_kwargs)
