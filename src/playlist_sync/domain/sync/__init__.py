"""Sync domain - local change log to remote playlists.

This domain handles:
- Watching the library and recording change events
- Folding events and writing them remotely (worker)
- Full local-vs-remote convergence (reconciler)
- Per-playlist leases and serialized credential refresh
"""

from .engine import SyncContext, new_holder_id
from .reconciler import run_reconcile_once
from .session import ProviderSession
from .watcher import LibraryEventHandler, run_watcher
from .worker import run_worker_once

__all__ = [
    "SyncContext",
    "new_holder_id",
    "run_reconcile_once",
    "ProviderSession",
    "LibraryEventHandler",
    "run_watcher",
    "run_worker_once",
]
