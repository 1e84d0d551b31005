"""
Tidal provider for playlist-sync.
"""

from loguru import logger

from ..provider import ProviderConfig, ProviderState
from . import api, auth


def init_provider(config: ProviderConfig) -> ProviderState:
    logger.debug(f"Initializing Tidal provider (country {config.country_code})")
    return ProviderState(config=config)


refresh_credentials = auth.refresh_credentials

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
