"""
Pieces shared by the worker and the reconciler: the per-run context, remote
playlist creation and the compare-and-swap write.
"""

import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from playlist_sync.core import database
from playlist_sync.core.config import Config
from playlist_sync.core.errors import (
    StaleSnapshotError,
    TrackNotFoundError,
    TransientNetworkError,
)
from playlist_sync.core.models import PlaylistMapping
from playlist_sync.domain.library.playlist_files import ordered_tracks
from playlist_sync.domain.library.tree import (
    LibraryTree,
    remote_playlist_description,
    remote_playlist_name,
)
from playlist_sync.domain.remote.diff import compute_diff
from playlist_sync.domain.remote.provider import RemotePlaylist

from . import leases
from .resolution import TrackResolver
from .session import ProviderSession


def new_holder_id(role: str = "worker") -> str:
    """Lease holder id unique to this process run."""
    return f"{role}:{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class SyncContext:
    config: Config
    session: ProviderSession
    holder: str
    resolver: Optional[TrackResolver] = None
    tree: Optional[LibraryTree] = field(default=None, repr=False)
    mutations: int = 0  # remote playlist edits written so far

    def __post_init__(self) -> None:
        if self.resolver is None:
            self.resolver = TrackResolver(
                self.session, self.config.worker.unresolved_retry_hours
            )

    @property
    def lease_ttl(self) -> int:
        return self.config.worker.lease_ttl_seconds

    def library(self) -> LibraryTree:
        """Local folder tree, scanned on first use."""
        if self.tree is None:
            self.tree = LibraryTree.from_config(self.config)
        return self.tree


@dataclass
class WriteResult:
    snapshot_id: str
    mutations: int
    track_ids: List[str]


def local_track_ids(ctx: SyncContext, playlist_name: str) -> List[str]:
    """Resolved remote ids of a local playlist in local order, without repeats."""
    tree = ctx.library()
    paths = [str(p) for p in ordered_tracks(ctx.config, tree, playlist_name)]
    resolved = ctx.resolver.resolve_many(paths)

    ids: List[str] = []
    seen = set()
    for path in paths:
        remote_id = resolved[path]
        if remote_id is None or remote_id in seen:
            continue
        ids.append(remote_id)
        seen.add(remote_id)
    return ids


def create_remote_playlist(
    ctx: SyncContext, playlist_name: str
) -> Tuple[str, RemotePlaylist]:
    """Create the remote playlist and record the mapping.

    Returns:
        (remote_id, empty RemotePlaylist at the initial snapshot)
    """
    name = remote_playlist_name(ctx.config, playlist_name)
    description = remote_playlist_description(ctx.config, playlist_name)
    remote_id, snapshot_id = ctx.session.call("create_playlist", name, description)
    database.save_playlist_mapping(playlist_name, remote_id, snapshot_id)
    logger.info(f"Created remote playlist '{name}' for {playlist_name} ({remote_id})")
    return remote_id, RemotePlaylist(remote_id=remote_id, snapshot_id=snapshot_id)


def ensure_remote_playlist(
    ctx: SyncContext, playlist_name: str, mapping: Optional[PlaylistMapping]
) -> Tuple[str, Optional[RemotePlaylist]]:
    """Remote id for a playlist, creating the remote side when unmapped.

    The RemotePlaylist is returned only when it was just created.
    """
    if mapping is not None and mapping.remote_id:
        return mapping.remote_id, None
    return create_remote_playlist(ctx, playlist_name)


def write_with_cas(
    ctx: SyncContext,
    playlist_name: str,
    remote_id: str,
    make_target: Callable[[Sequence[str]], List[str]],
    playlist: Optional[RemotePlaylist] = None,
) -> WriteResult:
    """Make the remote playlist hold make_target(current ids).

    The diff is computed against a fresh read and written with that read's
    snapshot. A stale snapshot means someone edited the playlist in between:
    re-read, recompute and try once more. A track id the provider refuses is
    recorded as unresolved and left out, and the write is retried without it.
    The lease is renewed before each write, and the new snapshot is stored on
    success.

    Raises:
        TransientNetworkError: If the snapshot is stale twice in a row
        TrackNotFoundError: If the provider rejects a track without naming it
        RemotePlaylistNotFoundError: If the remote playlist is gone
        LeaseBusyError: If our lease expired and another holder took it
    """
    mapping = database.get_playlist_mapping(playlist_name)
    known_snapshot = mapping.remote_snapshot_id if mapping else None
    rejected: Set[str] = set()
    stale = 0

    while True:
        if playlist is None:
            playlist = ctx.session.call("get_playlist", remote_id)
            if known_snapshot and playlist.snapshot_id != known_snapshot:
                logger.info(
                    f"{playlist_name}: remote changed outside sync "
                    f"({known_snapshot[:8]} -> {playlist.snapshot_id[:8]})"
                )

        current = playlist.track_ids
        target = [
            t for t in make_target(current) if t not in rejected or t in current
        ]
        diff = compute_diff(current, target)
        if diff.is_empty:
            database.update_playlist_snapshot(playlist_name, playlist.snapshot_id)
            return WriteResult(playlist.snapshot_id, 0, target)

        leases.acquire(playlist_name, ctx.holder, ctx.lease_ttl)
        try:
            snapshot_id = ctx.session.call(
                "apply_diff", remote_id, playlist.snapshot_id, diff
            )
        except StaleSnapshotError as e:
            stale += 1
            logger.info(f"{playlist_name}: stale snapshot on attempt {stale}: {e}")
            if stale == 2:
                raise TransientNetworkError(
                    f"{playlist_name}: remote playlist kept changing; will retry next cycle"
                ) from e
            known_snapshot = None
            playlist = None
            continue
        except TrackNotFoundError as e:
            if not e.remote_track_id or e.remote_track_id in rejected:
                raise
            logger.warning(
                f"{playlist_name}: provider rejected {e.remote_track_id}; writing without it"
            )
            ctx.resolver.invalidate(e.remote_track_id)
            rejected.add(e.remote_track_id)
            # The provider may have applied part of the diff before refusing
            known_snapshot = None
            playlist = None
            continue

        database.update_playlist_snapshot(playlist_name, snapshot_id)
        logger.info(f"{playlist_name}: applied {diff.summary()} -> {snapshot_id[:8]}")
        return WriteResult(snapshot_id, diff.mutation_count, target)
