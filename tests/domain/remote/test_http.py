"""Tests for mapping HTTP failures onto sync errors."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from playlist_sync.core.errors import (
    AuthExpiredError,
    ProviderError,
    RateLimitedError,
    RemotePlaylistNotFoundError,
    StaleSnapshotError,
    TransientNetworkError,
)
from playlist_sync.domain.remote import http


def make_response(status_code=200, json_data=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    response.json.return_value = json_data or {}
    return response


class TestCheckResponse:
    """Status codes map onto the error taxonomy."""

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, AuthExpiredError),
            (404, RemotePlaylistNotFoundError),
            (409, StaleSnapshotError),
            (412, StaleSnapshotError),
            (500, TransientNetworkError),
            (503, TransientNetworkError),
            (400, ProviderError),
            (403, ProviderError),
        ],
    )
    def test_status_mapping(self, status: int, error: type) -> None:
        with pytest.raises(error):
            http.check_response(make_response(status), "GET /x")

    def test_success_passes(self) -> None:
        http.check_response(make_response(201), "POST /x")

    def test_rate_limit_reads_retry_after(self) -> None:
        """429 carries the Retry-After seconds."""
        with pytest.raises(RateLimitedError) as excinfo:
            http.check_response(make_response(429, headers={"Retry-After": "12"}), "GET /x")
        assert excinfo.value.retry_after == 12.0

    def test_provider_error_keeps_status(self) -> None:
        with pytest.raises(ProviderError) as excinfo:
            http.check_response(make_response(400, text="bad uri"), "POST /x")
        assert excinfo.value.status_code == 400


class TestParseRetryAfter:
    def test_missing_uses_default(self) -> None:
        assert http.parse_retry_after(None, default=3.0) == 3.0

    def test_garbage_uses_default(self) -> None:
        assert http.parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 1.0

    def test_negative_clamped(self) -> None:
        assert http.parse_retry_after("-5") == 0.0


class TestSend:
    @patch("playlist_sync.domain.remote.http.requests.request")
    def test_adds_bearer_token_and_timeout(self, mock_request) -> None:
        mock_request.return_value = make_response(200, {"ok": True})

        response = http.send("GET", "https://api.example/x", access_token="tok")

        assert response.json() == {"ok": True}
        _, kwargs = mock_request.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["timeout"] == http.DEFAULT_TIMEOUT

    @patch("playlist_sync.domain.remote.http.requests.request")
    def test_connection_error_is_transient(self, mock_request) -> None:
        mock_request.side_effect = requests.ConnectionError("reset by peer")
        with pytest.raises(TransientNetworkError):
            http.send("GET", "https://api.example/x")

    @patch("playlist_sync.domain.remote.http.requests.request")
    def test_timeout_is_transient(self, mock_request) -> None:
        mock_request.side_effect = requests.Timeout("read timed out")
        with pytest.raises(TransientNetworkError):
            http.send("GET", "https://api.example/x")
