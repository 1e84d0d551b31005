"""
Provider interface for remote playlist services.

Providers are implemented as modules with pure functions, not classes.
This protocol just defines the contract that provider modules must follow.
Every function takes a ProviderState and returns (new_state, result); failures
are raised as the exceptions in playlist_sync.core.errors so the worker can
retry, refresh, or skip without knowing which service it talks to.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

from .diff import PlaylistDiff


@dataclass
class ProviderConfig:
    """Static configuration for a provider."""

    name: str  # Provider name: "spotify", "tidal", ...
    client_id: str = ""
    client_secret: str = ""
    country_code: str = "US"
    max_batch_size: int = 100
    timeout: int = 30


@dataclass
class ProviderState:
    """Runtime state for a provider.

    Immutable state container passed to all provider functions.
    Functions return new ProviderState instead of mutating.
    """

    config: ProviderConfig
    authenticated: bool = False
    token_data: Optional[Dict[str, Any]] = None
    cache: Dict[str, Any] = field(default_factory=dict)

    def with_authenticated(self, authenticated: bool) -> "ProviderState":
        """Return new state with updated authentication status."""
        return replace(self, authenticated=authenticated)

    def with_token(self, token_data: Dict[str, Any]) -> "ProviderState":
        """Return new authenticated state holding token_data."""
        return replace(self, authenticated=True, token_data=token_data)

    def with_cache(self, **updates: Any) -> "ProviderState":
        """Return new state with updated cache entries."""
        return replace(self, cache={**self.cache, **updates})


@dataclass(frozen=True)
class TrackQuery:
    """What we know about a local file when searching for it remotely."""

    local_path: str
    isrc: Optional[str] = None
    artist: Optional[str] = None
    title: Optional[str] = None

    @property
    def text(self) -> str:
        """Free-text search string ("Artist - Title" or the file stem)."""
        if self.artist and self.title:
            return f"{self.artist} - {self.title}"
        return self.title or Path(self.local_path).stem


@dataclass(frozen=True)
class RemotePlaylist:
    """Remote playlist contents at one snapshot.

    item_ids holds per-entry identifiers for providers that address
    playlist entries individually (Tidal); it is parallel to track_ids.
    """

    remote_id: str
    snapshot_id: str
    track_ids: Tuple[str, ...] = ()
    item_ids: Tuple[str, ...] = ()


class PlaylistProvider(Protocol):
    """Protocol defining the interface for remote playlist providers.

    Example provider module structure:

        # domain/remote/spotify/__init__.py

        def init_provider(config: ProviderConfig) -> ProviderState:
            return ProviderState(config=config)

        def get_playlist(state, remote_id) -> Tuple[ProviderState, RemotePlaylist]:
            ...
    """

    def init_provider(config: ProviderConfig) -> ProviderState:
        """Initialize provider state (no network access)."""
        ...

    def refresh_credentials(
        state: ProviderState,
    ) -> Tuple[ProviderState, Dict[str, Any]]:
        """Exchange the refresh token for a new access token.

        Returns:
            (new_state, token_data) - token_data is what gets persisted

        Raises:
            AuthFailureError: If the refresh is rejected or impossible
        """
        ...

    def search_track(
        state: ProviderState, query: TrackQuery
    ) -> Tuple[ProviderState, str]:
        """Find the remote track id for a local file.

        Raises:
            TrackNotFoundError: If nothing matches
        """
        ...

    def get_playlist(
        state: ProviderState, remote_id: str
    ) -> Tuple[ProviderState, RemotePlaylist]:
        """Read the current snapshot and ordered track ids.

        Raises:
            RemotePlaylistNotFoundError: If the playlist is gone
        """
        ...

    def create_playlist(
        state: ProviderState, name: str, description: str = ""
    ) -> Tuple[ProviderState, Tuple[str, str]]:
        """Create an empty playlist.

        Returns:
            (new_state, (remote_id, snapshot_id))
        """
        ...

    def apply_diff(
        state: ProviderState,
        remote_id: str,
        expected_snapshot: str,
        diff: PlaylistDiff,
    ) -> Tuple[ProviderState, str]:
        """Apply removals then insertions if the playlist is still at expected_snapshot.

        Returns:
            (new_state, new_snapshot_id)

        Raises:
            StaleSnapshotError: If the remote playlist moved on
            RateLimitedError: Provider throttled the request
            AuthExpiredError: Access token rejected
            TrackNotFoundError: Provider rejected a track id
        """
        ...

    def rename_playlist(
        state: ProviderState, remote_id: str, name: str
    ) -> Tuple[ProviderState, None]:
        """Change a playlist's display name."""
        ...

    def delete_playlist(
        state: ProviderState, remote_id: str
    ) -> Tuple[ProviderState, None]:
        """Delete (or unfollow) a playlist. Missing playlists are not an error."""
        ...
