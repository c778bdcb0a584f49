from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import settings

logger = logging.getLogger(__name__)

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # If http2 extras not installed, gracefully fall back to HTTP/1.1
            logger.info("h2 not installed, using HTTP/1.1 for outbound calls")
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


async def close_http_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception:
            logger.exception("Failed to close shared HTTP client")
        _HTTPX_CLIENT = None
