"""
Local file to remote track id resolution, backed by track_cache.
"""

from typing import Dict, Iterable, Optional

from loguru import logger

from playlist_sync.core import database
from playlist_sync.core.errors import TrackNotFoundError
from playlist_sync.core.models import REMOTE_ID_PREFIX
from playlist_sync.domain.library.metadata import build_track_query


class TrackResolver:
    """Resolves track paths through the cache, searching the provider on a miss.

    A search with no match is cached too (remote_id NULL) and not repeated
    until retry_hours have passed.
    """

    def __init__(self, session, retry_hours: int = 24):
        self.session = session
        self.retry_seconds = retry_hours * 3600
        self.stats = {"cache_hits": 0, "searches": 0, "unresolved": 0}

    def resolve(self, track_path: str) -> Optional[str]:
        if track_path.startswith(REMOTE_ID_PREFIX):
            return track_path[len(REMOTE_ID_PREFIX):]

        cached = database.get_track_resolution(track_path)
        if cached is not None:
            if cached.resolved:
                self.stats["cache_hits"] += 1
                return cached.remote_id
            age = database.now_seconds() - (cached.resolved_at or 0)
            if age < self.retry_seconds:
                self.stats["unresolved"] += 1
                return None

        query = build_track_query(track_path)
        self.stats["searches"] += 1
        try:
            remote_id = self.session.call("search_track", query)
        except TrackNotFoundError:
            logger.warning(f"No remote match for {track_path}; excluded from sync")
            database.save_track_resolution(track_path, None, query.isrc)
            self.stats["unresolved"] += 1
            return None

        database.save_track_resolution(track_path, remote_id, query.isrc)
        logger.debug(f"Resolved {track_path} -> {remote_id}")
        return remote_id

    def resolve_many(self, track_paths: Iterable[str]) -> Dict[str, Optional[str]]:
        return {path: self.resolve(path) for path in track_paths}

    def invalidate(self, remote_id: str) -> None:
        """Record every path resolved to remote_id as unresolved.

        The provider refused the id, so the paths count as fresh misses and are
        searched again only after retry_hours.
        """
        marked = database.invalidate_track_resolution(remote_id)
        logger.warning(f"Provider rejected {remote_id}; {marked} track(s) left unresolved")
