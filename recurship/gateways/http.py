"""Shared HTTP error mapping for provider adapters.

Transport errors and 429/5xx become ``TransientGatewayFailure``; any other
non-2xx becomes ``PermanentGatewayFailure``. Provider error bodies are kept
out of exception messages apart from a short excerpt for the log.
"""

from __future__ import annotations

from typing import Any

import httpx

from recurship.exceptions import PermanentGatewayFailure, TransientGatewayFailure

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

_MAX_EXCERPT = 200


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def check_response(provider: str, response: httpx.Response) -> Any:
    """Return the decoded JSON body or raise the matching gateway failure."""
    status = response.status_code
    if status in RETRYABLE_STATUS_CODES:
        raise TransientGatewayFailure(
            f"{provider} HTTP {status}", retry_after=_retry_after(response)
        )
    if status >= 400:
        excerpt = response.text[:_MAX_EXCERPT]
        raise PermanentGatewayFailure(f"{provider} HTTP {status}: {excerpt}")
    try:
        return response.json()
    except ValueError as e:
        raise PermanentGatewayFailure(f"{provider} returned non-JSON body") from e


async def send(
    client: httpx.AsyncClient, provider: str, method: str, url: str, **kwargs: Any
) -> Any:
    """Issue a request and map transport errors to gateway failures."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientGatewayFailure(f"{provider} timeout: {type(e).__name__}") from e
    except httpx.TransportError as e:
        raise TransientGatewayFailure(f"{provider} connection error: {type(e).__name__}") from e
    return check_response(provider, response)
