"""
Exception hierarchy for playlist sync.

Every failure the engine knows how to react to has its own class so the
worker and reconciler can decide between retry, skip, and stop without
looking at provider specifics.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for all playlist sync errors."""

    pass


class ConfigError(SyncError):
    """Configuration file is missing required values or has invalid ones."""

    pass


class TransientNetworkError(SyncError):
    """Connection dropped, timed out, or the provider answered with a 5xx."""

    pass


class RateLimitedError(SyncError):
    """Provider asked us to slow down."""

    def __init__(self, message: str, retry_after: float = 1.0):
        super().__init__(message)
        self.retry_after = retry_after


class AuthExpiredError(SyncError):
    """Access token rejected; a refresh may fix it."""

    pass


class AuthFailureError(SyncError):
    """Credential refresh failed. Needs a new token import."""

    pass


class StaleSnapshotError(SyncError):
    """Remote playlist changed since the snapshot we hold."""

    def __init__(self, message: str, current_snapshot: Optional[str] = None):
        super().__init__(message)
        self.current_snapshot = current_snapshot


class TrackNotFoundError(SyncError):
    """Search had no match, or the provider rejected a track id.

    When raised while applying a diff, remote_track_id names the id the
    provider no longer knows so its cached resolution can be dropped.
    """

    def __init__(self, message: str, remote_track_id: Optional[str] = None):
        super().__init__(message)
        self.remote_track_id = remote_track_id


class RemotePlaylistNotFoundError(SyncError):
    """Mapped remote playlist no longer exists."""

    def __init__(self, message: str, remote_id: Optional[str] = None):
        super().__init__(message)
        self.remote_id = remote_id


class ProviderError(SyncError):
    """Provider returned something we cannot classify."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LocalIOError(SyncError):
    """Reading or writing a local file failed."""

    pass


class StoreContentionError(SyncError):
    """Database stayed locked after all retries."""

    pass


class StoreCorruptionError(SyncError):
    """Database file is damaged. The engine halts on this one."""

    pass


class LeaseBusyError(SyncError):
    """Another holder owns an unexpired lease."""

    def __init__(self, name: str, holder: str, expires_at: int):
        super().__init__(
            f"Lease '{name}' held by {holder} until {expires_at}"
        )
        self.name = name
        self.holder = holder
        self.expires_at = expires_at
