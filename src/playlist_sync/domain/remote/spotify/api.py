"""
Spotify Web API operations for playlist sync.

Pure functions. All functions take ProviderState and return (ProviderState, result).

Spotify has no conditional write, so apply_diff checks the playlist's
snapshot_id right before writing and passes it along with removals.

Entries whose track is null (removed from the catalog) still hold a position
in the playlist. get_playlist leaves them out of track_ids but remembers the
full layout per snapshot, and apply_diff shifts insert positions past them.
"""

from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from playlist_sync.core.errors import (
    ProviderError,
    RemotePlaylistNotFoundError,
    StaleSnapshotError,
    TrackNotFoundError,
)

from .. import http
from ..diff import PlaylistDiff, apply_diff as apply_diff_locally
from ..provider import ProviderState, RemotePlaylist, TrackQuery
from .auth import ensure_valid_token

# Spotify API base URL
API_BASE = "https://api.spotify.com/v1"


def _to_uri(track_id: str) -> str:
    """Track id (or already-formed URI) to a Spotify URI."""
    if track_id.startswith("spotify:"):
        return track_id
    return f"spotify:track:{track_id}"


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _entry_id(item: Dict[str, Any]) -> Optional[str]:
    """Id used for a playlist entry; local files keep their URI."""
    track = item.get("track")
    if not track:
        return None
    if track.get("is_local") or not track.get("id"):
        return track.get("uri")
    return track["id"]


def _cached_layout(
    state: ProviderState, remote_id: str, snapshot_id: str
) -> Optional[Tuple[Optional[str], ...]]:
    cached = state.cache.get("layouts", {}).get(remote_id)
    if cached and cached[0] == snapshot_id:
        return cached[1]
    return None


def _raw_position(layout: List[Optional[str]], position: int) -> int:
    """Index in layout of the entry at position among available entries."""
    seen = 0
    for index, entry in enumerate(layout):
        if entry is None:
            continue
        if seen == position:
            return index
        seen += 1
    return len(layout)


def _get_user_id(state: ProviderState, token: str) -> Tuple[ProviderState, str]:
    user_id = state.cache.get("user_id")
    if user_id:
        return state, user_id

    response = http.send(
        "GET", f"{API_BASE}/me", access_token=token, timeout=state.config.timeout
    )
    user_id = response.json()["id"]
    return state.with_cache(user_id=user_id), user_id


def _first_track_id(data: Dict[str, Any]) -> Optional[str]:
    items = data.get("tracks", {}).get("items", [])
    for track in items:
        if track and track.get("id"):
            return track["id"]
    return None


def search_track(state: ProviderState, query: TrackQuery) -> Tuple[ProviderState, str]:
    """Search by ISRC first, then by artist/title.

    Raises:
        TrackNotFoundError: No result for any query
    """
    token = ensure_valid_token(state)

    queries = []
    if query.isrc:
        queries.append(f"isrc:{query.isrc}")
    if query.artist and query.title:
        queries.append(f'track:"{query.title}" artist:"{query.artist}"')
    queries.append(query.text)

    for q in queries:
        response = http.send(
            "GET",
            f"{API_BASE}/search",
            access_token=token,
            timeout=state.config.timeout,
            params={"q": q, "type": "track", "limit": 5},
        )
        track_id = _first_track_id(response.json())
        if track_id:
            logger.debug(f"Spotify search {q!r} -> {track_id}")
            return state, track_id

    raise TrackNotFoundError(f"No Spotify match for {query.local_path}")


def _current_snapshot(state: ProviderState, token: str, remote_id: str) -> str:
    response = http.send(
        "GET",
        f"{API_BASE}/playlists/{remote_id}",
        access_token=token,
        timeout=state.config.timeout,
        params={"fields": "snapshot_id"},
    )
    return response.json()["snapshot_id"]


def get_playlist(
    state: ProviderState, remote_id: str
) -> Tuple[ProviderState, RemotePlaylist]:
    """Fetch snapshot_id and the ordered track ids of a playlist.

    Raises:
        RemotePlaylistNotFoundError: Playlist deleted or unfollowed
    """
    token = ensure_valid_token(state)

    try:
        response = http.send(
            "GET",
            f"{API_BASE}/playlists/{remote_id}",
            access_token=token,
            timeout=state.config.timeout,
            params={
                "fields": "snapshot_id,tracks.next,tracks.items(track(id,uri,is_local))"
            },
        )
    except RemotePlaylistNotFoundError as e:
        raise RemotePlaylistNotFoundError(str(e), remote_id=remote_id) from e

    data = response.json()
    snapshot_id = data["snapshot_id"]
    layout: List[Optional[str]] = []

    page = data["tracks"]
    while True:
        layout.extend(_entry_id(item) for item in page.get("items", []))
        next_url = page.get("next")
        if not next_url:
            break
        page = http.send(
            "GET", next_url, access_token=token, timeout=state.config.timeout
        ).json()

    track_ids = [entry for entry in layout if entry is not None]
    unavailable = len(layout) - len(track_ids)
    note = f", {unavailable} unavailable" if unavailable else ""
    logger.debug(
        f"Fetched Spotify playlist {remote_id}: {len(track_ids)} tracks{note} (snapshot {snapshot_id})"
    )
    layouts = {**state.cache.get("layouts", {}), remote_id: (snapshot_id, tuple(layout))}
    state = state.with_cache(layouts=layouts)
    return state, RemotePlaylist(
        remote_id=remote_id, snapshot_id=snapshot_id, track_ids=tuple(track_ids)
    )


def create_playlist(
    state: ProviderState, name: str, description: str = ""
) -> Tuple[ProviderState, Tuple[str, str]]:
    """Create new private Spotify playlist.

    Returns:
        (updated_state, (playlist_id, snapshot_id))
    """
    token = ensure_valid_token(state)
    state, user_id = _get_user_id(state, token)

    response = http.send(
        "POST",
        f"{API_BASE}/users/{user_id}/playlists",
        access_token=token,
        timeout=state.config.timeout,
        json={"name": name, "description": description, "public": False},
    )
    data = response.json()
    logger.info(f"Created Spotify playlist: {name} ({data['id']})")
    return state, (data["id"], data["snapshot_id"])


def _replace_all(
    state: ProviderState, token: str, remote_id: str, track_ids: List[str]
) -> str:
    """Overwrite the whole playlist; used when removals hit duplicated tracks."""
    batch = state.config.max_batch_size
    chunks = _chunks([_to_uri(t) for t in track_ids], batch) or [[]]

    response = http.send(
        "PUT",
        f"{API_BASE}/playlists/{remote_id}/tracks",
        access_token=token,
        timeout=state.config.timeout,
        json={"uris": chunks[0]},
    )
    snapshot_id = response.json()["snapshot_id"]
    for chunk in chunks[1:]:
        response = http.send(
            "POST",
            f"{API_BASE}/playlists/{remote_id}/tracks",
            access_token=token,
            timeout=state.config.timeout,
            json={"uris": chunk},
        )
        snapshot_id = response.json()["snapshot_id"]
    return snapshot_id


def apply_diff(
    state: ProviderState,
    remote_id: str,
    expected_snapshot: str,
    diff: PlaylistDiff,
) -> Tuple[ProviderState, str]:
    """Apply removals then positional insertions.

    Insert positions count available tracks only; they are shifted past
    unavailable entries using the layout get_playlist saw at expected_snapshot.

    Raises:
        StaleSnapshotError: Playlist snapshot differs from expected_snapshot
        TrackNotFoundError: Spotify rejected a track URI in a single-track insert
    """
    token = ensure_valid_token(state)

    playlist = None
    layout = _cached_layout(state, remote_id, expected_snapshot)
    if diff.removals or layout is None:
        state, playlist = get_playlist(state, remote_id)
        current_snapshot = playlist.snapshot_id
        layout = _cached_layout(state, remote_id, current_snapshot)
    else:
        current_snapshot = _current_snapshot(state, token, remote_id)

    if current_snapshot != expected_snapshot:
        raise StaleSnapshotError(
            f"Spotify playlist {remote_id} at {current_snapshot}, expected {expected_snapshot}",
            current_snapshot=current_snapshot,
        )

    if diff.is_empty:
        return state, current_snapshot

    batch = state.config.max_batch_size
    snapshot_id = current_snapshot
    entries = list(layout or ())

    # Spotify removes every occurrence of a URI. When a removed id also has a
    # copy that must stay, positional removal is impossible: rewrite instead.
    removed = Counter(r.track_id for r in diff.removals)
    if playlist is not None:
        present = Counter(playlist.track_ids)
        if any(present[track_id] != count for track_id, count in removed.items()):
            target = apply_diff_locally(list(playlist.track_ids), diff)
            logger.info(
                f"Rewriting Spotify playlist {remote_id} ({len(target)} tracks) for duplicate removal"
            )
            return state, _replace_all(state, token, remote_id, target)

        for chunk in _chunks(list(removed), batch):
            response = http.send(
                "DELETE",
                f"{API_BASE}/playlists/{remote_id}/tracks",
                access_token=token,
                timeout=state.config.timeout,
                json={
                    "tracks": [{"uri": _to_uri(t)} for t in chunk],
                    "snapshot_id": snapshot_id,
                },
            )
            snapshot_id = response.json()["snapshot_id"]
        entries = [e for e in entries if e is None or e not in removed]

    for start, track_ids in diff.insertion_runs():
        position = _raw_position(entries, start)
        for offset, chunk in enumerate(_chunks(track_ids, batch)):
            try:
                response = http.send(
                    "POST",
                    f"{API_BASE}/playlists/{remote_id}/tracks",
                    access_token=token,
                    timeout=state.config.timeout,
                    json={
                        "uris": [_to_uri(t) for t in chunk],
                        "position": position + offset * batch,
                    },
                )
            except ProviderError as e:
                if e.status_code == 400 and len(chunk) == 1:
                    raise TrackNotFoundError(
                        f"Spotify rejected track {chunk[0]}", remote_track_id=chunk[0]
                    ) from e
                raise
            snapshot_id = response.json()["snapshot_id"]
        entries[position:position] = track_ids

    logger.info(f"Applied diff {diff.summary()} to Spotify playlist {remote_id}")
    return state, snapshot_id


def rename_playlist(
    state: ProviderState, remote_id: str, name: str
) -> Tuple[ProviderState, None]:
    token = ensure_valid_token(state)
    http.send(
        "PUT",
        f"{API_BASE}/playlists/{remote_id}",
        access_token=token,
        timeout=state.config.timeout,
        json={"name": name},
    )
    logger.info(f"Renamed Spotify playlist {remote_id} to {name}")
    return state, None


def delete_playlist(state: ProviderState, remote_id: str) -> Tuple[ProviderState, None]:
    """Unfollow the playlist (Spotify's way of deleting it)."""
    token = ensure_valid_token(state)
    try:
        http.send(
            "DELETE",
            f"{API_BASE}/playlists/{remote_id}/followers",
            access_token=token,
            timeout=state.config.timeout,
        )
    except RemotePlaylistNotFoundError:
        logger.info(f"Spotify playlist {remote_id} already gone")
        return state, None

    logger.info(f"Unfollowed Spotify playlist {remote_id}")
    return state, None
