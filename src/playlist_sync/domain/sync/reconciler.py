"""
Reconciler: make every remote playlist match its local folder.

Works from a fresh scan of the library, not from the change log, so it
repairs drift the log missed (lost filesystem events, edits made on the
remote side, a crash between a write and marking events synced). A second
pass with nothing changed writes nothing.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from loguru import logger

from playlist_sync.core import database
from playlist_sync.core.errors import (
    AuthFailureError,
    LeaseBusyError,
    RemotePlaylistNotFoundError,
    StoreCorruptionError,
    SyncError,
)
from playlist_sync.core.models import EventAction
from playlist_sync.domain.library.tree import LibraryTree

from . import leases
from .engine import (
    SyncContext,
    create_remote_playlist,
    ensure_remote_playlist,
    local_track_ids,
    write_with_cas,
)


@dataclass
class ReconcileReport:
    reconciled: List[str] = field(default_factory=list)
    busy: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    mutations: int = 0
    stopped: Optional[str] = None


def _structural_names() -> Set[str]:
    """Playlists with a pending delete or rename (either side), left to the worker."""
    names: Set[str] = set()
    for name in database.get_playlists_with_unsynced_events():
        for event in database.get_unsynced_events(name):
            if event.action == EventAction.DELETE:
                names.add(name)
            elif event.action == EventAction.RENAME:
                names.add(name)
                target = (event.extra or {}).get("to")
                if target:
                    names.add(target)
    return names


def _reconcile_orphan(ctx: SyncContext, name: str, scan_ms: int) -> int:
    mapping = database.get_playlist_mapping(name)
    if not ctx.config.worker.reconcile_delete_orphans:
        logger.warning(
            f"{name}: mapped to {mapping.remote_id if mapping else None} but no local folder; "
            "enable reconcile_delete_orphans to delete it"
        )
        return 0
    if mapping is not None and mapping.remote_id:
        ctx.session.call("delete_playlist", mapping.remote_id)
    database.delete_playlist_mapping(name)
    database.mark_events_synced_before(name, scan_ms)
    logger.info(f"{name}: orphaned remote playlist deleted")
    return 0


def reconcile_playlist(ctx: SyncContext, name: str, scan_ms: int) -> Optional[int]:
    """Converge one playlist on its local order.

    Returns:
        Remote mutations written, or None if another holder has the lease
    """
    try:
        leases.acquire(name, ctx.holder, ctx.lease_ttl)
    except LeaseBusyError as e:
        logger.info(f"{name}: leased by {e.holder}; skipping")
        return None

    try:
        if not ctx.library().has_playlist(name):
            return _reconcile_orphan(ctx, name, scan_ms)

        local = local_track_ids(ctx, name)
        mapping = database.get_playlist_mapping(name)
        remote_id, fresh = ensure_remote_playlist(ctx, name, mapping)
        try:
            result = write_with_cas(ctx, name, remote_id, lambda _: local, playlist=fresh)
        except RemotePlaylistNotFoundError:
            logger.warning(f"{name}: remote playlist {remote_id} is gone; recreating")
            database.delete_playlist_mapping(name)
            remote_id, fresh = create_remote_playlist(ctx, name)
            result = write_with_cas(ctx, name, remote_id, lambda _: local, playlist=fresh)

        subsumed = database.mark_events_synced_before(name, scan_ms)
        if subsumed:
            logger.debug(f"{name}: {subsumed} pending event(s) covered by reconcile")
        return result.mutations
    finally:
        leases.release(name, ctx.holder)


def run_reconcile_once(ctx: SyncContext) -> ReconcileReport:
    """Reconcile every local folder and every mapped playlist.

    Raises:
        StoreCorruptionError: The store is unusable
    """
    report = ReconcileReport()
    scan_ms = database.now_ms()
    ctx.tree = LibraryTree.from_config(ctx.config)

    local_names = set(ctx.tree.playlist_names())
    mapped_names = {m.playlist_name for m in database.list_playlist_mappings()}
    deferred = _structural_names()

    for name in sorted(local_names | mapped_names):
        if name in deferred:
            report.deferred.append(name)
            continue
        if name not in local_names:
            report.orphans.append(name)
        try:
            mutations = reconcile_playlist(ctx, name, scan_ms)
        except StoreCorruptionError:
            raise
        except AuthFailureError as e:
            logger.error(f"{ctx.session.name} authentication failed: {e}")
            report.failed[name] = str(e)
            report.stopped = "auth_failure"
            break
        except SyncError as e:
            logger.warning(f"{name}: reconcile failed: {e}")
            report.failed[name] = str(e)
            continue

        if mutations is None:
            report.busy.append(name)
        else:
            report.reconciled.append(name)
            report.mutations += mutations

    logger.info(
        f"Reconcile done: {len(report.reconciled)} playlists, {report.mutations} mutations, "
        f"{len(report.failed)} failed, {len(report.deferred)} deferred"
    )
    return report
