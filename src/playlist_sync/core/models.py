"""
Records stored in the sync database.

Timestamps follow the on-disk format: change events use epoch milliseconds,
every other table uses epoch seconds.
"""

import json
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class EventAction(str, Enum):
    """Kind of local mutation recorded in the change log."""

    ADD = "add"
    REMOVE = "remove"
    REORDER = "reorder"
    CREATE = "create"
    DELETE = "delete"
    RENAME = "rename"


# Track paths with this prefix carry a remote track id instead of a file path
REMOTE_ID_PREFIX = "uri::"


@dataclass(frozen=True)
class ChangeEvent:
    """One detected local mutation."""

    id: int
    timestamp: int  # epoch milliseconds
    playlist_name: str
    action: EventAction
    track_path: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None
    is_synced: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ChangeEvent":
        extra = json.loads(row["extra"]) if row["extra"] else None
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            playlist_name=row["playlist_name"],
            action=EventAction(row["action"]),
            track_path=row["track_path"],
            extra=extra,
            is_synced=bool(row["is_synced"]),
        )


@dataclass(frozen=True)
class PlaylistMapping:
    """Local playlist name to remote playlist id and last written snapshot."""

    playlist_name: str
    remote_id: Optional[str]
    remote_snapshot_id: Optional[str]
    last_synced_at: Optional[int] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PlaylistMapping":
        return cls(
            playlist_name=row["playlist_name"],
            remote_id=row["remote_id"],
            remote_snapshot_id=row["remote_snapshot_id"],
            last_synced_at=row["last_synced_at"],
            id=row["id"],
        )


@dataclass(frozen=True)
class TrackResolution:
    """Cached lookup of a local file's remote track id.

    A row without remote_id records a search that found nothing.
    """

    local_path: str
    remote_id: Optional[str]
    isrc: Optional[str] = None
    resolved_at: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.remote_id is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TrackResolution":
        return cls(
            local_path=row["local_path"],
            remote_id=row["remote_id"],
            isrc=row["isrc"],
            resolved_at=row["resolved_at"],
        )


@dataclass(frozen=True)
class Credential:
    """Stored provider token payload."""

    provider: str
    token_json: str
    last_refreshed: Optional[int] = None

    @property
    def token(self) -> Dict[str, Any]:
        return json.loads(self.token_json)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Credential":
        return cls(
            provider=row["provider"],
            token_json=row["token_json"],
            last_refreshed=row["last_refreshed"],
        )


@dataclass(frozen=True)
class ProcessingLease:
    """Time-bounded ownership of a playlist (or credential guard)."""

    name: str
    holder: str
    locked_at: int
    expires_at: int

    def is_valid(self, now: int) -> bool:
        return now < self.expires_at

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProcessingLease":
        return cls(
            name=row["playlist_name"],
            holder=row["worker_id"],
            locked_at=row["locked_at"],
            expires_at=row["expires_at"],
        )
