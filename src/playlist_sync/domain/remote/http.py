"""
HTTP plumbing shared by provider modules.

Maps transport failures and HTTP status codes onto the sync error taxonomy
so provider code only deals with successful responses.
"""

from typing import Any, Dict, Optional

import requests
from loguru import logger

from playlist_sync.core.errors import (
    AuthExpiredError,
    ProviderError,
    RateLimitedError,
    RemotePlaylistNotFoundError,
    StaleSnapshotError,
    TransientNetworkError,
)

DEFAULT_TIMEOUT = 30


def parse_retry_after(value: Optional[str], default: float = 1.0) -> float:
    """Retry-After header in seconds (HTTP-date form is not used by our providers)."""
    if not value:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        return default


def check_response(response: requests.Response, context: str) -> None:
    """Raise the matching sync error for a failed response."""
    status = response.status_code
    if status < 400:
        return

    body = response.text[:300] if response.text else ""
    if status == 401:
        raise AuthExpiredError(f"{context}: access token rejected")
    if status == 404:
        raise RemotePlaylistNotFoundError(f"{context}: not found")
    if status in (409, 412):
        raise StaleSnapshotError(f"{context}: remote changed ({status})")
    if status == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        logger.warning(f"{context}: rate limited, retry after {retry_after}s")
        raise RateLimitedError(f"{context}: rate limited", retry_after=retry_after)
    if status >= 500:
        raise TransientNetworkError(f"{context}: server error {status} {body}")
    raise ProviderError(f"{context}: HTTP {status} {body}", status_code=status)


def send(
    method: str,
    url: str,
    access_token: Optional[str] = None,
    timeout: int = DEFAULT_TIMEOUT,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any,
) -> requests.Response:
    """Send a request and raise on failure.

    Raises:
        TransientNetworkError: Connection error, timeout, or 5xx
        plus whatever check_response raises for the status code
    """
    request_headers = dict(headers or {})
    if access_token:
        request_headers["Authorization"] = f"Bearer {access_token}"

    context = f"{method} {url}"
    try:
        response = requests.request(
            method, url, headers=request_headers, timeout=timeout, **kwargs
        )
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientNetworkError(f"{context}: {e}") from e

    check_response(response, context)
    return response
