"""HTTP request/response logging hooks for the async job client.

Every call made by :class:`~IKFastOnline.network.client.GitHubActionsClient`
is logged with method, redacted URL, status, and elapsed time so that a JSON
log file reconstructs the full conversation with the provider.
"""

from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import urlparse, urlunparse

logger = logging.getLogger(__name__)

# Start time lives on the request so failed requests leave nothing behind.
_START_KEY = "ikfast_started_at"


def create_http_event_hooks() -> dict:
    """Create HTTPX event hooks for ``httpx.AsyncClient``.

    Usage:
        >>> import httpx
        >>> hooks = create_http_event_hooks()
        >>> client = httpx.AsyncClient(event_hooks=hooks)
    """

    async def on_request(request: Any) -> None:
        request.extensions[_START_KEY] = time.perf_counter()

    async def on_response(response: Any) -> None:
        start_time = response.request.extensions.get(_START_KEY)
        elapsed_ms = None if start_time is None else (time.perf_counter() - start_time) * 1000
        logger.debug(
            "%s %s -> %s",
            response.request.method,
            _redact_url(str(response.request.url)),
            response.status_code,
            extra={
                "stage": "http",
                "elapsed_ms": None if elapsed_ms is None else round(elapsed_ms, 1),
            },
        )

    return {
        "request": [on_request],
        "response": [on_response],
    }


def _redact_url(url: str) -> str:
    """Strip query strings and fragments, keeping scheme + host + path."""
    parsed = urlparse(url)
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))


__all__ = ["create_http_event_hooks"]
