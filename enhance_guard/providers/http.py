"""
Shared HTTP plumbing for cloud adapters.

Maps transport failures and HTTP status codes onto provider error kinds.
"""

import logging
from typing import Optional

import httpx

from enhance_guard.core.errors import ProviderError
from enhance_guard.core.types import ProviderID

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(60.0, connect=10.0)


def new_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)


async def send(
    client: httpx.AsyncClient, method: str, url: str, provider: ProviderID, **kwargs
) -> httpx.Response:
    """Send a request and raise ``ProviderError`` for any failure.

    Raises:
        ProviderError: Transient for timeouts, connection failures and 5xx;
            rate limited for 429; permanent for other 4xx
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderError.transient(f"{provider.value} request timed out: {e}", provider) from e
    except httpx.TransportError as e:
        raise ProviderError.transient(f"{provider.value} connection failed: {e}", provider) from e

    raise_for_status(response, provider)
    return response


def raise_for_status(response: httpx.Response, provider: ProviderID) -> None:
    status = response.status_code
    if status < 400:
        return
    message = f"{provider.value} returned HTTP {status}: {response.text[:200]}"
    if status == 429:
        raise ProviderError.rate_limited(message, provider, parse_retry_after(response))
    if status >= 500:
        raise ProviderError.transient(message, provider)
    raise ProviderError.permanent(message, provider)


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP dates are ignored."""
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        logger.debug("Ignoring non-numeric Retry-After: %s", value)
        return None


def read_json(response: httpx.Response, provider: ProviderID) -> dict:
    """Decode a JSON object body.

    Raises:
        ProviderError: Permanent, if the body is not a JSON object
    """
    try:
        body = response.json()
    except ValueError as e:
        raise ProviderError.permanent(
            f"{provider.value} returned a malformed response: {response.text[:200]}", provider
        ) from e
    if not isinstance(body, dict):
        raise ProviderError.permanent(
            f"{provider.value} returned {type(body).__name__} instead of an object", provider
        )
    return body
