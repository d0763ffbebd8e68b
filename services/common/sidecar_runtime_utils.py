"""Shared runtime helpers: env parsing and preconfigured httpx clients."""

from __future__ import annotations

import os
from typing import Optional

import httpx

DEFAULT_STREAM_CONNECT_TIMEOUT = 30.0
DEFAULT_STREAM_READ_TIMEOUT = 300.0

# Realistic browser User-Agent for upstream API and media requests
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)


def env_int(name: str, default: str) -> int:
    """Parse an integer env var using a string default value."""
    return int(os.getenv(name, default))


def env_float(name: str, default: str) -> float:
    """Parse a float env var using a string default value."""
    return float(os.getenv(name, default))


def env_list(name: str, default: list[str]) -> list[str]:
    """Parse a comma separated env var; blank or unset yields *default*."""
    raw = os.getenv(name, "")
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


def stream_proxy_timeout() -> httpx.Timeout:
    """Timeout for long-lived upstream media streams."""
    return httpx.Timeout(
        DEFAULT_STREAM_CONNECT_TIMEOUT,
        read=DEFAULT_STREAM_READ_TIMEOUT,
    )


def build_stream_proxy_client(
    user_agent: Optional[str] = BROWSER_USER_AGENT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """AsyncClient for proxying media bytes (long read timeout, redirects on)."""
    client_kwargs: dict = {"timeout": stream_proxy_timeout(), "follow_redirects": True}
    if user_agent is not None:
        client_kwargs["headers"] = {"User-Agent": user_agent}
    if transport is not None:
        client_kwargs["transport"] = transport
    return httpx.AsyncClient(**client_kwargs)


def build_api_client(
    timeout: float,
    *,
    base_url: str = "",
    user_agent: Optional[str] = BROWSER_USER_AGENT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """AsyncClient for short JSON API calls."""
    headers = {"Accept": "application/json,text/plain"}
    if user_agent is not None:
        headers["User-Agent"] = user_agent
    client_kwargs: dict = {
        "timeout": httpx.Timeout(timeout),
        "headers": headers,
        "follow_redirects": True,
    }
    if base_url:
        client_kwargs["base_url"] = base_url
    if transport is not None:
        client_kwargs["transport"] = transport
    return httpx.AsyncClient(**client_kwargs)
