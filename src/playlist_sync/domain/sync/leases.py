"""
Per-playlist processing leases.

A lease is a row in processing_locks. It is valid while now < expires_at;
once expired anyone may take it over. Each operation runs in one
BEGIN IMMEDIATE transaction so two processes cannot both see the row as free.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

from loguru import logger

from playlist_sync.core.database import (
    get_db_connection,
    now_seconds,
    transaction,
    with_db_retry,
)
from playlist_sync.core.errors import LeaseBusyError
from playlist_sync.core.models import ProcessingLease


@with_db_retry()
def acquire(
    name: str, holder: str, ttl_seconds: int, now: Optional[int] = None
) -> ProcessingLease:
    """Take or extend the lease on name.

    Succeeds when no unexpired lease exists or holder already owns it; the
    expiry is pushed to now + ttl_seconds either way.

    Raises:
        LeaseBusyError: If another holder's lease is still valid
    """
    now = now if now is not None else now_seconds()
    expires_at = now + ttl_seconds

    with transaction() as conn:
        row = conn.execute(
            "SELECT * FROM processing_locks WHERE playlist_name = ?", (name,)
        ).fetchone()

        locked_at = now
        if row is not None:
            current = ProcessingLease.from_row(row)
            if current.is_valid(now):
                if current.holder != holder:
                    raise LeaseBusyError(name, current.holder, current.expires_at)
                locked_at = current.locked_at
            else:
                logger.debug(
                    f"Reclaiming expired lease '{name}' from {current.holder}"
                )

        conn.execute(
            """
            INSERT INTO processing_locks (playlist_name, worker_id, locked_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(playlist_name) DO UPDATE SET
                worker_id = excluded.worker_id,
                locked_at = excluded.locked_at,
                expires_at = excluded.expires_at
            """,
            (name, holder, locked_at, expires_at),
        )

    return ProcessingLease(name, holder, locked_at, expires_at)


@with_db_retry()
def release(name: str, holder: str) -> bool:
    """Drop the lease if holder still owns it.

    Returns:
        True if a row was deleted; False when the lease was already
        reclaimed by someone else or never existed
    """
    with transaction() as conn:
        cursor = conn.execute(
            "DELETE FROM processing_locks WHERE playlist_name = ? AND worker_id = ?",
            (name, holder),
        )
        released = cursor.rowcount > 0

    if not released:
        logger.debug(f"Lease '{name}' not held by {holder}; nothing to release")
    return released


@with_db_retry()
def get_lease(name: str) -> Optional[ProcessingLease]:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT * FROM processing_locks WHERE playlist_name = ?", (name,)
        ).fetchone()
    return ProcessingLease.from_row(row) if row else None


@with_db_retry()
def list_leases() -> List[ProcessingLease]:
    with get_db_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM processing_locks ORDER BY playlist_name"
        ).fetchall()
    return [ProcessingLease.from_row(row) for row in rows]


@contextmanager
def held(name: str, holder: str, ttl_seconds: int) -> Iterator[ProcessingLease]:
    """Hold a lease for the duration of a block.

    Raises:
        LeaseBusyError: If the lease cannot be acquired
    """
    lease = acquire(name, holder, ttl_seconds)
    try:
        yield lease
    finally:
        release(name, holder)
