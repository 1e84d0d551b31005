"""
Spotify OAuth 2.0 token management.

Initial authorization happens outside this tool; the resulting token JSON is
imported with `playlist-sync auth-import spotify <file>`. This module only
checks expiry and refreshes.
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

TOKEN_URL = "https://accounts.spotify.com/api/token"


def is_token_expired(token_data: Dict[str, Any]) -> bool:
    """Check if token is expired (with 5-minute buffer)."""
    if "expires_at" not in token_data:
        return True

    expires_at = datetime.fromisoformat(token_data["expires_at"])
    buffer = timedelta(minutes=5)

    return datetime.now() >= (expires_at - buffer)


def ensure_valid_token(state: ProviderState) -> str:
    """Return the access token, or raise so the caller refreshes first.

    Refresh is never done inline: it must go through the credential guard
    so only one process spends the refresh token.

    Raises:
        AuthExpiredError: No token loaded, or token expired
    """
    token_data = state.token_data
    if not token_data or not token_data.get("access_token"):
        raise AuthExpiredError("No Spotify credentials loaded")
    if is_token_expired(token_data):
        raise AuthExpiredError("Spotify access token expired")
    return token_data["access_token"]


def refresh_credentials(
    state: ProviderState,
) -> Tuple[ProviderState, Dict[str, Any]]:
    """Refresh expired OAuth token.

    Returns:
        (new_state, token_data)

    Raises:
        AuthFailureError: Missing client credentials/refresh token, or Spotify refused
        TransientNetworkError: Token endpoint unreachable
    """
    client_id = state.config.client_id
    client_secret = state.config.client_secret
    token_data = state.token_data or {}
    refresh_token_value = token_data.get("refresh_token")

    if not client_id or not client_secret or not refresh_token_value:
        logger.warning("Missing credentials or refresh token for Spotify token refresh")
        raise AuthFailureError(
            "Spotify refresh impossible: run `playlist-sync auth-import spotify <token.json>`"
        )

    # Spotify requires Basic auth for token refresh
    auth_header = base64.b64encode(
        f"{client_id}:{client_secret}".encode("utf-8")
    ).decode("utf-8")

    try:
        response = requests.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token_value,
            },
            headers={"Authorization": f"Basic {auth_header}"},
            timeout=state.config.timeout,
        )
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientNetworkError(f"Spotify token refresh: {e}") from e

    if response.status_code >= 500:
        raise TransientNetworkError(
            f"Spotify token refresh: server error {response.status_code}"
        )
    if response.status_code != 200:
        logger.error(f"Spotify token refresh error: {response.text}")
        raise AuthFailureError(
            f"Spotify token refresh rejected ({response.status_code})"
        )

    new_token_data = response.json()

    # Add expiry timestamp
    expires_in = new_token_data.get("expires_in", 3600)
    expires_at = datetime.now() + timedelta(seconds=expires_in)
    new_token_data["expires_at"] = expires_at.isoformat()

    # Preserve refresh token if not included in response
    if "refresh_token" not in new_token_data:
        new_token_data["refresh_token"] = refresh_token_value

    logger.info(f"Spotify token refreshed successfully, expires: {expires_at}")
    return state.with_token(new_token_data), new_token_data
