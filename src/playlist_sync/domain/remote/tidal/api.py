"""
Tidal v2 (JSON:API) operations for playlist sync.

All functions take ProviderState and return (ProviderState, result).

Tidal exposes no playlist version token, so the snapshot id is a digest of
the ordered (itemId, trackId) pairs. Any remote edit changes it.
"""

import hashlib
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

from loguru import logger

from playlist_sync.core.errors import (
    RemotePlaylistNotFoundError,
    StaleSnapshotError,
    TrackNotFoundError,
)

from .. import http
from ..diff import PlaylistDiff
from ..provider import ProviderState, RemotePlaylist, TrackQuery
from .auth import ensure_valid_token

API_BASE = "https://openapi.tidal.com/v2"
CONTENT_TYPE = "application/vnd.tidal.v1+json"


def _headers() -> Dict[str, str]:
    return {"Content-Type": CONTENT_TYPE, "Accept": CONTENT_TYPE}


def _params(state: ProviderState, **extra: Any) -> Dict[str, Any]:
    return {"countryCode": state.config.country_code, **extra}


def _absolute(url: str) -> str:
    if url.startswith("http"):
        return url
    return f"{API_BASE}{url}"


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def snapshot_of(item_ids: Sequence[str], track_ids: Sequence[str]) -> str:
    digest = hashlib.sha1()
    for item_id, track_id in zip(item_ids, track_ids):
        digest.update(f"{item_id}:{track_id};".encode("utf-8"))
    return digest.hexdigest()


def _item_track_id(item: Dict[str, Any]) -> Optional[str]:
    """Track id of a playlist item in either resource or relationship form."""
    related = item.get("relationships", {}).get("track", {}).get("data")
    if related and related.get("id"):
        return str(related["id"])
    if item.get("type") == "tracks" and item.get("id"):
        return str(item["id"])
    return None


def _item_entry_id(item: Dict[str, Any], fallback: str) -> str:
    meta = item.get("meta") or {}
    return str(meta.get("itemId") or fallback)


def search_track(state: ProviderState, query: TrackQuery) -> Tuple[ProviderState, str]:
    """Look up by ISRC filter, then by free-text search.

    Raises:
        TrackNotFoundError: Neither lookup found a track
    """
    token = ensure_valid_token(state)

    if query.isrc:
        response = http.send(
            "GET",
            f"{API_BASE}/tracks",
            access_token=token,
            timeout=state.config.timeout,
            headers=_headers(),
            params=_params(state, **{"filter[isrc]": query.isrc}),
        )
        data = response.json().get("data") or []
        if data:
            return state, str(data[0]["id"])

    try:
        response = http.send(
            "GET",
            f"{API_BASE}/searchResults/{quote(query.text, safe='')}/relationships/tracks",
            access_token=token,
            timeout=state.config.timeout,
            headers=_headers(),
            params=_params(state),
        )
    except RemotePlaylistNotFoundError as e:
        raise TrackNotFoundError(f"No Tidal match for {query.local_path}") from e

    data = response.json().get("data") or []
    if data:
        return state, str(data[0]["id"])
    raise TrackNotFoundError(f"No Tidal match for {query.local_path}")


def get_playlist(
    state: ProviderState, remote_id: str
) -> Tuple[ProviderState, RemotePlaylist]:
    """Fetch all playlist items (following links.next).

    Raises:
        RemotePlaylistNotFoundError: Playlist deleted
    """
    token = ensure_valid_token(state)

    try:
        http.send(
            "GET",
            f"{API_BASE}/playlists/{remote_id}",
            access_token=token,
            timeout=state.config.timeout,
            headers=_headers(),
            params=_params(state),
        )
    except RemotePlaylistNotFoundError as e:
        raise RemotePlaylistNotFoundError(str(e), remote_id=remote_id) from e

    track_ids: List[str] = []
    item_ids: List[str] = []
    url: Optional[str] = f"{API_BASE}/playlists/{remote_id}/items"
    params: Optional[Dict[str, Any]] = _params(state)

    while url:
        try:
            response = http.send(
                "GET",
                url,
                access_token=token,
                timeout=state.config.timeout,
                headers=_headers(),
                params=params,
            )
        except RemotePlaylistNotFoundError:
            # Tidal answers 404 for the items of an empty playlist
            break
        page = response.json()
        for item in page.get("data") or []:
            track_id = _item_track_id(item)
            if track_id is None:
                continue
            track_ids.append(track_id)
            item_ids.append(_item_entry_id(item, f"{track_id}#{len(item_ids)}"))
        next_link = (page.get("links") or {}).get("next")
        url = _absolute(next_link) if next_link else None
        params = None

    snapshot_id = snapshot_of(item_ids, track_ids)
    logger.debug(
        f"Fetched Tidal playlist {remote_id}: {len(track_ids)} tracks (snapshot {snapshot_id[:8]})"
    )
    return state, RemotePlaylist(
        remote_id=remote_id,
        snapshot_id=snapshot_id,
        track_ids=tuple(track_ids),
        item_ids=tuple(item_ids),
    )


def create_playlist(
    state: ProviderState, name: str, description: str = ""
) -> Tuple[ProviderState, Tuple[str, str]]:
    """Create a private Tidal playlist.

    Returns:
        (updated_state, (playlist_id, snapshot_id))
    """
    token = ensure_valid_token(state)
    response = http.send(
        "POST",
        f"{API_BASE}/playlists",
        access_token=token,
        timeout=state.config.timeout,
        headers=_headers(),
        params=_params(state),
        json={
            "data": {
                "type": "playlists",
                "attributes": {
                    "name": name,
                    "description": description,
                    "accessType": "UNLISTED",
                },
            }
        },
    )
    playlist_id = str(response.json()["data"]["id"])
    logger.info(f"Created Tidal playlist: {name} ({playlist_id})")
    return state, (playlist_id, snapshot_of([], []))


def apply_diff(
    state: ProviderState,
    remote_id: str,
    expected_snapshot: str,
    diff: PlaylistDiff,
) -> Tuple[ProviderState, str]:
    """Remove items by itemId, then insert runs before their following kept item.

    Raises:
        StaleSnapshotError: Current items digest differs from expected_snapshot
    """
    token = ensure_valid_token(state)
    state, playlist = get_playlist(state, remote_id)
    if playlist.snapshot_id != expected_snapshot:
        raise StaleSnapshotError(
            f"Tidal playlist {remote_id} changed since {expected_snapshot[:8]}",
            current_snapshot=playlist.snapshot_id,
        )
    if diff.is_empty:
        return state, playlist.snapshot_id

    batch = state.config.max_batch_size
    url = f"{API_BASE}/playlists/{remote_id}/relationships/items"

    removed_positions = {r.position for r in diff.removals}
    removal_data = [
        {
            "type": "tracks",
            "id": r.track_id,
            "meta": {"itemId": playlist.item_ids[r.position]},
        }
        for r in diff.removals
    ]
    for chunk in _chunks(removal_data, batch):
        http.send(
            "DELETE",
            url,
            access_token=token,
            timeout=state.config.timeout,
            headers=_headers(),
            params=_params(state),
            json={"data": chunk},
        )

    # Item ids of surviving entries, keyed by their position in the target list
    kept_items = [
        item_id
        for position, item_id in enumerate(playlist.item_ids)
        if position not in removed_positions
    ]
    inserted_positions = {i.position for i in diff.insertions}
    target_length = len(kept_items) + len(diff.insertions)
    kept_positions = [p for p in range(target_length) if p not in inserted_positions]
    item_at = dict(zip(kept_positions, kept_items))

    for start, track_ids in diff.insertion_runs():
        anchor = item_at.get(start + len(track_ids))
        for chunk in _chunks(track_ids, batch):
            body: Dict[str, Any] = {
                "data": [{"type": "tracks", "id": t} for t in chunk]
            }
            if anchor:
                body["meta"] = {"positionBefore": anchor}
            try:
                http.send(
                    "POST",
                    url,
                    access_token=token,
                    timeout=state.config.timeout,
                    headers=_headers(),
                    params=_params(state),
                    json=body,
                )
            except RemotePlaylistNotFoundError as e:
                if len(chunk) == 1:
                    raise TrackNotFoundError(
                        f"Tidal rejected track {chunk[0]}", remote_track_id=chunk[0]
                    ) from e
                raise

    state, updated = get_playlist(state, remote_id)
    logger.info(f"Applied diff {diff.summary()} to Tidal playlist {remote_id}")
    return state, updated.snapshot_id


def rename_playlist(
    state: ProviderState, remote_id: str, name: str
) -> Tuple[ProviderState, None]:
    token = ensure_valid_token(state)
    http.send(
        "PATCH",
        f"{API_BASE}/playlists/{remote_id}",
        access_token=token,
        timeout=state.config.timeout,
        headers=_headers(),
        params=_params(state),
        json={
            "data": {"type": "playlists", "id": remote_id, "attributes": {"name": name}}
        },
    )
    logger.info(f"Renamed Tidal playlist {remote_id} to {name}")
    return state, None


def delete_playlist(state: ProviderState, remote_id: str) -> Tuple[ProviderState, None]:
    token = ensure_valid_token(state)
    try:
        http.send(
            "DELETE",
            f"{API_BASE}/playlists/{remote_id}",
            access_token=token,
            timeout=state.config.timeout,
            headers=_headers(),
            params=_params(state),
        )
    except RemotePlaylistNotFoundError:
        logger.info(f"Tidal playlist {remote_id} already gone")
        return state, None

    logger.info(f"Deleted Tidal playlist {remote_id}")
    return state, None
