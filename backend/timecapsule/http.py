"""Shared settings for outbound calls to GitHub and Google."""

from typing import Optional

import httpx

# Upstream calls are awaited one after another; a slow call only risks the request timeout
DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


def get_transport() -> Optional[httpx.AsyncBaseTransport]:
    """FastAPI dependency: transport for upstream APIs. None means the real network."""
    return None


def async_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """New AsyncClient for one upstream exchange."""
    return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=transport)
