"""
SQLite database operations for playlist-sync

The table layout is shared with other implementations of the sync engine,
so column names and types must not change.
"""

import json
import sqlite3
import time
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from loguru import logger

from .config import get_data_dir
from .errors import StoreContentionError, StoreCorruptionError
from .models import (
    ChangeEvent,
    Credential,
    EventAction,
    PlaylistMapping,
    TrackResolution,
)

T = TypeVar("T")

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS event_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    playlist_name TEXT NOT NULL,
    action TEXT NOT NULL,
    track_path TEXT,
    extra TEXT,
    is_synced INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_event_queue_unsynced ON event_queue (is_synced, timestamp);

CREATE TABLE IF NOT EXISTS playlist_map (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    playlist_name TEXT UNIQUE NOT NULL,
    remote_id TEXT,
    remote_snapshot_id TEXT,
    last_synced_at INTEGER
);

CREATE TABLE IF NOT EXISTS track_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    isrc TEXT,
    local_path TEXT UNIQUE,
    remote_id TEXT,
    resolved_at INTEGER
);

CREATE TABLE IF NOT EXISTS credentials (
    provider TEXT PRIMARY KEY,
    token_json TEXT NOT NULL,
    last_refreshed INTEGER
);

CREATE TABLE IF NOT EXISTS processing_locks (
    playlist_name TEXT PRIMARY KEY,
    worker_id TEXT,
    locked_at INTEGER,
    expires_at INTEGER
);
"""

_database_path: Optional[Path] = None


def set_database_path(path: Optional[Path]) -> None:
    """Use a custom database file (from config) instead of the data dir default."""
    global _database_path
    _database_path = path


def get_database_path() -> Path:
    """Get the path to the SQLite database file."""
    if _database_path is not None:
        return _database_path
    return get_data_dir() / "playlist-sync.db"


def now_ms() -> int:
    return int(time.time() * 1000)


def now_seconds() -> int:
    return int(time.time())


@contextmanager
def get_db_connection():
    """Get a database connection with proper cleanup and concurrency support."""
    db_path = get_database_path()
    # 30s busy timeout: worker, reconciler and watcher share this file
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row

    # WAL lets the watcher append while a worker reads
    conn.execute("PRAGMA journal_mode=WAL")

    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction():
    """Open a connection inside a single write transaction.

    BEGIN IMMEDIATE takes the write lock up front so read-then-write
    sequences (lease checks) cannot interleave with another process.
    """
    with get_db_connection() as conn:
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")


def _is_corruption(message: str) -> bool:
    return "malformed" in message or "not a database" in message


def with_db_retry(
    max_attempts: int = 5,
    initial_delay: float = 0.1,
    max_delay: float = 2.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for retrying database operations on lock errors.

    "database is locked" is retried with exponential backoff and surfaces as
    StoreContentionError once attempts run out. Corruption errors become
    StoreCorruptionError immediately.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    message = str(e).lower()
                    if _is_corruption(message):
                        raise StoreCorruptionError(str(e)) from e
                    if "locked" not in message and "busy" not in message:
                        raise
                    if attempt == max_attempts:
                        logger.error(
                            f"{func.__name__}: database still locked after {attempt} attempts"
                        )
                        raise StoreContentionError(
                            f"{func.__name__}: {e}"
                        ) from e
                    logger.debug(
                        f"{func.__name__}: database locked, retry {attempt}/{max_attempts} in {delay:.2f}s"
                    )
                    time.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)
                except sqlite3.DatabaseError as e:
                    if _is_corruption(str(e).lower()):
                        raise StoreCorruptionError(str(e)) from e
                    raise
            raise AssertionError("unreachable")

        return wrapper

    return decorator


@with_db_retry()
def init_database() -> None:
    """Create tables and indexes if they do not exist."""
    db_path = get_database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db_connection() as conn:
        conn.executescript(SCHEMA)
        current_version = conn.execute("PRAGMA user_version").fetchone()[0]
        if current_version < SCHEMA_VERSION:
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()

    logger.debug(f"Database ready at {db_path}")


@with_db_retry()
def check_integrity() -> None:
    """Run SQLite's integrity check.

    Raises:
        StoreCorruptionError: If the check reports any problem
    """
    with get_db_connection() as conn:
        result = conn.execute("PRAGMA quick_check").fetchone()[0]
    if result != "ok":
        raise StoreCorruptionError(f"Integrity check failed: {result}")


# ==================== CHANGE LOG ====================


@with_db_retry()
def enqueue_event(
    playlist_name: str,
    action: EventAction,
    track_path: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    timestamp_ms: Optional[int] = None,
) -> int:
    """Append a change event.

    Returns:
        New event id
    """
    timestamp_ms = timestamp_ms if timestamp_ms is not None else now_ms()
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO event_queue (timestamp, playlist_name, action, track_path, extra, is_synced)
            VALUES (?, ?, ?, ?, ?, 0)
            """,
            (
                timestamp_ms,
                playlist_name,
                EventAction(action).value,
                track_path,
                json.dumps(extra) if extra is not None else None,
            ),
        )
        conn.commit()
        return cursor.lastrowid


@with_db_retry()
def get_playlists_with_unsynced_events() -> List[str]:
    """Playlist names with pending events, oldest pending event first."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            SELECT playlist_name, MIN(timestamp) AS first_ts
            FROM event_queue
            WHERE is_synced = 0
            GROUP BY playlist_name
            ORDER BY first_ts, playlist_name
            """
        )
        return [row["playlist_name"] for row in cursor.fetchall()]


@with_db_retry()
def get_unsynced_events(playlist_name: str) -> List[ChangeEvent]:
    """All unsynced events for one playlist in apply order."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            SELECT * FROM event_queue
            WHERE is_synced = 0 AND playlist_name = ?
            ORDER BY timestamp, id
            """,
            (playlist_name,),
        )
        rows = cursor.fetchall()

    events = []
    for row in rows:
        try:
            events.append(ChangeEvent.from_row(row))
        except ValueError:
            logger.warning(
                f"Skipping event {row['id']} with unknown action {row['action']!r}"
            )
    return events


@with_db_retry()
def mark_events_synced(event_ids: Iterable[int]) -> int:
    """Flag events as synced. Returns number of rows changed."""
    ids = list(event_ids)
    if not ids:
        return 0
    placeholders = ",".join("?" for _ in ids)
    with get_db_connection() as conn:
        cursor = conn.execute(
            f"UPDATE event_queue SET is_synced = 1 WHERE id IN ({placeholders})",
            ids,
        )
        conn.commit()
        return cursor.rowcount


@with_db_retry()
def mark_events_synced_before(playlist_name: str, timestamp_ms: int) -> int:
    """Flag every unsynced event of a playlist recorded at or before timestamp_ms."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE event_queue SET is_synced = 1
            WHERE playlist_name = ? AND is_synced = 0 AND timestamp <= ?
            """,
            (playlist_name, timestamp_ms),
        )
        conn.commit()
        return cursor.rowcount


@with_db_retry()
def count_unsynced_events() -> int:
    with get_db_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM event_queue WHERE is_synced = 0"
        ).fetchone()[0]


@with_db_retry()
def get_queue_summary() -> List[Dict[str, Any]]:
    """Per-playlist unsynced counts for status output."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            SELECT playlist_name, COUNT(*) AS pending, MIN(timestamp) AS oldest
            FROM event_queue
            WHERE is_synced = 0
            GROUP BY playlist_name
            ORDER BY oldest
            """
        )
        return [dict(row) for row in cursor.fetchall()]


@with_db_retry()
def prune_synced_events(older_than_ms: int) -> int:
    """Delete synced events recorded before older_than_ms."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            "DELETE FROM event_queue WHERE is_synced = 1 AND timestamp < ?",
            (older_than_ms,),
        )
        conn.commit()
        return cursor.rowcount


@with_db_retry()
def clear_unsynced_events(playlist_name: Optional[str] = None) -> int:
    """Drop pending events, for one playlist or all of them."""
    with get_db_connection() as conn:
        if playlist_name is None:
            cursor = conn.execute("DELETE FROM event_queue WHERE is_synced = 0")
        else:
            cursor = conn.execute(
                "DELETE FROM event_queue WHERE is_synced = 0 AND playlist_name = ?",
                (playlist_name,),
            )
        conn.commit()
        return cursor.rowcount


# ==================== PLAYLIST MAP ====================


@with_db_retry()
def get_playlist_mapping(playlist_name: str) -> Optional[PlaylistMapping]:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT * FROM playlist_map WHERE playlist_name = ?", (playlist_name,)
        ).fetchone()
    return PlaylistMapping.from_row(row) if row else None


@with_db_retry()
def list_playlist_mappings() -> List[PlaylistMapping]:
    with get_db_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM playlist_map ORDER BY playlist_name"
        ).fetchall()
    return [PlaylistMapping.from_row(row) for row in rows]


@with_db_retry()
def save_playlist_mapping(
    playlist_name: str,
    remote_id: Optional[str],
    remote_snapshot_id: Optional[str],
    last_synced_at: Optional[int] = None,
) -> None:
    """Insert or replace the mapping for a playlist."""
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO playlist_map (playlist_name, remote_id, remote_snapshot_id, last_synced_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(playlist_name) DO UPDATE SET
                remote_id = excluded.remote_id,
                remote_snapshot_id = excluded.remote_snapshot_id,
                last_synced_at = excluded.last_synced_at
            """,
            (
                playlist_name,
                remote_id,
                remote_snapshot_id,
                last_synced_at if last_synced_at is not None else now_seconds(),
            ),
        )
        conn.commit()


@with_db_retry()
def update_playlist_snapshot(
    playlist_name: str, remote_snapshot_id: str, last_synced_at: Optional[int] = None
) -> None:
    with get_db_connection() as conn:
        conn.execute(
            """
            UPDATE playlist_map SET remote_snapshot_id = ?, last_synced_at = ?
            WHERE playlist_name = ?
            """,
            (
                remote_snapshot_id,
                last_synced_at if last_synced_at is not None else now_seconds(),
                playlist_name,
            ),
        )
        conn.commit()


@with_db_retry()
def rename_playlist_mapping(old_name: str, new_name: str) -> bool:
    """Re-key a mapping. An existing mapping under new_name is replaced.

    Returns:
        True if a mapping was renamed
    """
    with transaction() as conn:
        row = conn.execute(
            "SELECT id FROM playlist_map WHERE playlist_name = ?", (old_name,)
        ).fetchone()
        if row is None:
            return False
        replaced = conn.execute(
            "DELETE FROM playlist_map WHERE playlist_name = ?", (new_name,)
        ).rowcount
        if replaced:
            logger.warning(f"Mapping for '{new_name}' replaced by rename of '{old_name}'")
        conn.execute(
            "UPDATE playlist_map SET playlist_name = ? WHERE id = ?",
            (new_name, row["id"]),
        )
        return True


@with_db_retry()
def delete_playlist_mapping(playlist_name: str) -> bool:
    with get_db_connection() as conn:
        cursor = conn.execute(
            "DELETE FROM playlist_map WHERE playlist_name = ?", (playlist_name,)
        )
        conn.commit()
        return cursor.rowcount > 0


# ==================== TRACK CACHE ====================


@with_db_retry()
def get_track_resolution(local_path: str) -> Optional[TrackResolution]:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT * FROM track_cache WHERE local_path = ?", (local_path,)
        ).fetchone()
    return TrackResolution.from_row(row) if row else None


@with_db_retry()
def save_track_resolution(
    local_path: str,
    remote_id: Optional[str],
    isrc: Optional[str] = None,
    resolved_at: Optional[int] = None,
) -> None:
    """Insert or update a track resolution. remote_id None records a miss."""
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO track_cache (isrc, local_path, remote_id, resolved_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(local_path) DO UPDATE SET
                isrc = COALESCE(excluded.isrc, track_cache.isrc),
                remote_id = excluded.remote_id,
                resolved_at = excluded.resolved_at
            """,
            (
                isrc,
                local_path,
                remote_id,
                resolved_at if resolved_at is not None else now_seconds(),
            ),
        )
        conn.commit()


@with_db_retry()
def invalidate_track_resolution(remote_id: str, resolved_at: Optional[int] = None) -> int:
    """Turn every resolution pointing at a rejected remote id into a recorded miss.

    The miss keeps its resolved_at, so the path is not searched again until
    the unresolved retry window has passed.
    """
    with get_db_connection() as conn:
        cursor = conn.execute(
            "UPDATE track_cache SET remote_id = NULL, resolved_at = ? WHERE remote_id = ?",
            (resolved_at if resolved_at is not None else now_seconds(), remote_id),
        )
        conn.commit()
        return cursor.rowcount


@with_db_retry()
def relocate_track_resolutions(old_path: str, new_path: str) -> int:
    """Point cached resolutions at a moved file, or at every file below a moved folder."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE OR REPLACE track_cache
            SET local_path = ? || substr(local_path, ?)
            WHERE local_path = ? OR substr(local_path, 1, ?) = ?
            """,
            (new_path, len(old_path) + 1, old_path, len(old_path) + 1, old_path + "/"),
        )
        conn.commit()
        return cursor.rowcount


@with_db_retry()
def get_track_cache_stats() -> Dict[str, int]:
    with get_db_connection() as conn:
        row = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN remote_id IS NULL THEN 1 ELSE 0 END), 0) AS unresolved
            FROM track_cache
            """
        ).fetchone()
    return {"total": row["total"], "unresolved": row["unresolved"]}


# ==================== CREDENTIALS ====================


@with_db_retry()
def load_credential(provider: str) -> Optional[Credential]:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT * FROM credentials WHERE provider = ?", (provider,)
        ).fetchone()
    return Credential.from_row(row) if row else None


@with_db_retry()
def save_credential(
    provider: str, token_data: Dict[str, Any], last_refreshed: Optional[int] = None
) -> None:
    """Store the provider's token payload, replacing any previous one."""
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO credentials (provider, token_json, last_refreshed)
            VALUES (?, ?, ?)
            ON CONFLICT(provider) DO UPDATE SET
                token_json = excluded.token_json,
                last_refreshed = excluded.last_refreshed
            """,
            (
                provider,
                json.dumps(token_data),
                last_refreshed if last_refreshed is not None else now_seconds(),
            ),
        )
        conn.commit()
