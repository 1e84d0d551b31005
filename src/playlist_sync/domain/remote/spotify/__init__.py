"""
Spotify provider for playlist-sync.

Token refresh plus the playlist read/write operations the sync engine needs.
"""

from loguru import logger

from ..provider import ProviderConfig, ProviderState

# Import from submodules
from . import api, auth


def init_provider(config: ProviderConfig) -> ProviderState:
    """Create an unauthenticated state; tokens are loaded from the credentials table."""
    logger.debug("Initializing Spotify provider")
    return ProviderState(config=config)


# Re-export authentication functions
refresh_credentials = auth.refresh_credentials

# Re-export API functions
search_track = api.search_track
get_playlist = api.get_playlist
create_playlist = api.create_playlist
apply_diff = api.apply_diff
rename_playlist = api.rename_playlist
delete_playlist = api.delete_playlist


__all__ = [
    "init_provider",
    "refresh_credentials",
    "search_track",
    "get_playlist",
    "create_playlist",
    "apply_diff",
    "rename_playlist",
    "delete_playlist",
]
