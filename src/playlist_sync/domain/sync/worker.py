"""
Worker: drains the change log one playlist at a time.

Per playlist: take the lease, fold the unsynced events, resolve the tracks
they mention, write the net change to the remote playlist with a
compare-and-swap on its snapshot, then mark the folded events synced. Any
failure before that last step leaves the events unsynced for the next cycle.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from playlist_sync.core import database
from playlist_sync.core.errors import (
    AuthFailureError,
    LeaseBusyError,
    RemotePlaylistNotFoundError,
    StoreCorruptionError,
    SyncError,
)
from playlist_sync.core.models import EventAction, PlaylistMapping
from playlist_sync.domain.library.tree import remote_playlist_name

from . import leases
from .engine import (
    SyncContext,
    create_remote_playlist,
    ensure_remote_playlist,
    local_track_ids,
    write_with_cas,
)
from .fold import FoldedChanges, build_target, fold_events


@dataclass
class WorkerReport:
    synced: List[str] = field(default_factory=list)
    busy: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    events_synced: int = 0
    mutations: int = 0
    stopped: Optional[str] = None  # why the cycle ended early


def _resolve_ids(ctx: SyncContext, paths: Sequence[str]) -> List[str]:
    resolved = ctx.resolver.resolve_many(paths)
    return [resolved[p] for p in paths if resolved[p] is not None]


def _handle_delete(ctx: SyncContext, folded: FoldedChanges) -> None:
    mapping = database.get_playlist_mapping(folded.playlist_name)
    if mapping is not None and mapping.remote_id:
        ctx.session.call("delete_playlist", mapping.remote_id)
    database.delete_playlist_mapping(folded.playlist_name)
    logger.info(f"{folded.playlist_name}: deleted remotely")


def _handle_unmapped_rename(ctx: SyncContext, folded: FoldedChanges) -> None:
    """Nothing remote to rename: queue the new name as a fresh playlist."""
    new_name = folded.rename_to
    tree = ctx.library()
    database.enqueue_event(new_name, EventAction.CREATE)
    for track in tree.playlist_tracks(new_name):
        database.enqueue_event(new_name, EventAction.ADD, track_path=str(track))
    logger.info(
        f"{folded.playlist_name}: never synced, queued '{new_name}' as a new playlist"
    )


def _apply_track_changes(
    ctx: SyncContext, folded: FoldedChanges, mapping: Optional[PlaylistMapping]
) -> int:
    name = folded.playlist_name
    added = _resolve_ids(ctx, folded.added)
    removed = _resolve_ids(ctx, folded.removed)
    order = _resolve_ids(ctx, folded.order) if folded.order is not None else None

    def make_target(current: Sequence[str]) -> List[str]:
        base = [] if folded.reset else current
        return build_target(base, added, removed, order)

    remote_id, fresh = ensure_remote_playlist(ctx, name, mapping)
    try:
        result = write_with_cas(ctx, name, remote_id, make_target, playlist=fresh)
    except RemotePlaylistNotFoundError:
        logger.warning(f"{name}: remote playlist {remote_id} is gone; recreating")
        database.delete_playlist_mapping(name)
        remote_id, fresh = create_remote_playlist(ctx, name)
        local = local_track_ids(ctx, name) if ctx.library().has_playlist(name) else []
        result = write_with_cas(
            ctx, name, remote_id, lambda _: make_target(local), playlist=fresh
        )
    return result.mutations


def sync_playlist(ctx: SyncContext, playlist_name: str) -> Optional[int]:
    """Push one playlist's unsynced events.

    Returns:
        Number of events marked synced, or None if another holder has the lease

    Raises:
        SyncError: Any failure; the events stay unsynced
    """
    try:
        leases.acquire(playlist_name, ctx.holder, ctx.lease_ttl)
    except LeaseBusyError as e:
        logger.info(f"{playlist_name}: leased by {e.holder}; skipping")
        return None

    try:
        events = database.get_unsynced_events(playlist_name)
        if not events:
            return 0
        folded = fold_events(playlist_name, events)
        mapping = database.get_playlist_mapping(playlist_name)

        if folded.deleted:
            _handle_delete(ctx, folded)
        elif folded.is_noop:
            logger.debug(f"{playlist_name}: {len(events)} event(s) cancel out")
        elif folded.rename_to and mapping is None:
            _handle_unmapped_rename(ctx, folded)
        else:
            if folded.has_track_changes or mapping is None:
                ctx.mutations += _apply_track_changes(ctx, folded, mapping)
            if folded.rename_to:
                _rename(ctx, playlist_name, folded.rename_to)

        return database.mark_events_synced(folded.event_ids)
    finally:
        leases.release(playlist_name, ctx.holder)


def _rename(ctx: SyncContext, old_name: str, new_name: str) -> None:
    mapping = database.get_playlist_mapping(old_name)
    ctx.session.call(
        "rename_playlist", mapping.remote_id, remote_playlist_name(ctx.config, new_name)
    )
    database.rename_playlist_mapping(old_name, new_name)
    logger.info(f"Renamed {old_name} -> {new_name}")


def run_worker_once(
    ctx: SyncContext, playlist_names: Optional[Sequence[str]] = None
) -> WorkerReport:
    """One pass over every playlist with unsynced events.

    Raises:
        StoreCorruptionError: The store is unusable; nothing else is raised
    """
    report = WorkerReport()
    threshold = ctx.config.worker.queue_length_stop_cloud_sync_threshold
    if threshold > 0:
        pending = database.count_unsynced_events()
        if pending > threshold:
            logger.warning(
                f"{pending} unsynced events exceed threshold {threshold}; skipping remote sync"
            )
            report.stopped = "backpressure"
            return report

    names = (
        list(playlist_names)
        if playlist_names is not None
        else database.get_playlists_with_unsynced_events()
    )
    logger.info(f"Worker {ctx.holder}: {len(names)} playlist(s) pending")

    start_mutations = ctx.mutations
    for name in names:
        try:
            count = sync_playlist(ctx, name)
        except StoreCorruptionError:
            raise
        except AuthFailureError as e:
            logger.error(f"{ctx.session.name} authentication failed: {e}")
            report.failed[name] = str(e)
            report.stopped = "auth_failure"
            break
        except SyncError as e:
            logger.warning(f"{name}: sync failed, will retry next cycle: {e}")
            report.failed[name] = str(e)
            continue

        if count is None:
            report.busy.append(name)
        else:
            report.synced.append(name)
            report.events_synced += count

    report.mutations = ctx.mutations - start_mutations
    logger.info(
        f"Worker done: {len(report.synced)} synced, {len(report.busy)} busy, "
        f"{len(report.failed)} failed, {report.events_synced} events"
    )
    return report
