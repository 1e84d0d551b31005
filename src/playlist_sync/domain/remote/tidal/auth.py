"""
Tidal OAuth 2.0 token management.
"""

import base64
from datetime import datetime, timedelta
from typing import Any, Dict, Tuple

import requests
from loguru import logger

from playlist_sync.core.errors import (
    AuthExpiredError,
    AuthFailureError,
    TransientNetworkError,
)

from ..provider import ProviderState

TOKEN_URL = "https://auth.tidal.com/v1/oauth2/token"


def _expires_at(token_data: Dict[str, Any]) -> datetime:
    """Imported tokens carry epoch seconds; refreshed ones an ISO string."""
    value = token_data["expires_at"]
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    return datetime.fromisoformat(value)


def is_token_expired(token_data: Dict[str, Any]) -> bool:
    """Check if token is expired (with 5-minute buffer)."""
    if "expires_at" not in token_data:
        return True
    return datetime.now() >= _expires_at(token_data) - timedelta(minutes=5)


def ensure_valid_token(state: ProviderState) -> str:
    """Return the access token or raise so the caller refreshes through the guard.

    Raises:
        AuthExpiredError: No token loaded, or token expired
    """
    token_data = state.token_data
    if not token_data or not token_data.get("access_token"):
        raise AuthExpiredError("No Tidal credentials loaded")
    if is_token_expired(token_data):
        raise AuthExpiredError("Tidal access token expired")
    return token_data["access_token"]


def refresh_credentials(
    state: ProviderState,
) -> Tuple[ProviderState, Dict[str, Any]]:
    """Refresh the Tidal access token.

    Raises:
        AuthFailureError: Missing client credentials/refresh token, or Tidal refused
        TransientNetworkError: Token endpoint unreachable
    """
    client_id = state.config.client_id
    client_secret = state.config.client_secret
    token_data = dict(state.token_data or {})
    refresh_token_value = token_data.get("refresh_token")

    if not client_id or not client_secret or not refresh_token_value:
        raise AuthFailureError(
            "Tidal refresh impossible: run `playlist-sync auth-import tidal <token.json>`"
        )

    auth_header = base64.b64encode(
        f"{client_id}:{client_secret}".encode("utf-8")
    ).decode("utf-8")

    try:
        response = requests.post(
            TOKEN_URL,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token_value},
            headers={"Authorization": f"Basic {auth_header}"},
            timeout=state.config.timeout,
        )
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientNetworkError(f"Tidal token refresh: {e}") from e

    if response.status_code >= 500:
        raise TransientNetworkError(
            f"Tidal token refresh: server error {response.status_code}"
        )
    if response.status_code != 200:
        logger.error(f"Tidal token refresh error: {response.text}")
        raise AuthFailureError(f"Tidal token refresh rejected ({response.status_code})")

    payload = response.json()
    expires_at = datetime.now() + timedelta(seconds=payload.get("expires_in", 3600))

    # Keep fields Tidal does not resend (refresh_token, user_id)
    token_data.update(payload)
    token_data["expires_at"] = expires_at.isoformat()

    logger.info(f"Tidal token refreshed successfully, expires: {expires_at}")
    return state.with_token(token_data), token_data
