"""Shared fixtures: temporary sync database, library folder and a fake provider."""

from collections import Counter, defaultdict
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

import playlist_sync.core.database as db_module
from playlist_sync.core.config import Config
from playlist_sync.core.errors import (
    AuthExpiredError,
    RemotePlaylistNotFoundError,
    StaleSnapshotError,
    TrackNotFoundError,
)
from playlist_sync.domain.remote.diff import PlaylistDiff
from playlist_sync.domain.remote.diff import apply_diff as apply_diff_locally
from playlist_sync.domain.remote.provider import (
    ProviderConfig,
    ProviderState,
    RemotePlaylist,
    TrackQuery,
)
from playlist_sync.domain.sync.credentials import CredentialGuard
from playlist_sync.domain.sync.engine import SyncContext
from playlist_sync.domain.sync.session import ProviderSession

HOLDER = "test-holder"


class FakeProvider:
    """In-memory provider following the provider module contract.

    Snapshots are "S0", "S1", ... per playlist and advance on every change.
    """

    def __init__(self):
        self.playlists: Dict[str, dict] = {}
        self.catalog: Dict[str, str] = {}  # file name -> track id
        self.rejected: set = set()  # track ids apply_diff refuses
        self.valid_tokens = {"good"}
        self.refresh_error: Optional[Exception] = None
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        # Run at the start of the next apply_diff, before the snapshot check
        self.external_edits: List[Callable[[], None]] = []
        self.calls: Counter = Counter()
        self.mutations = 0
        self._next_id = 1
        self._refreshes = 0

    # ---- helpers for tests ----

    def add_playlist(self, name: str, tracks: Optional[List[str]] = None) -> str:
        remote_id = f"pl{self._next_id}"
        self._next_id += 1
        self.playlists[remote_id] = {"name": name, "tracks": list(tracks or []), "version": 0}
        return remote_id

    def snapshot(self, remote_id: str) -> str:
        return f"S{self.playlists[remote_id]['version']}"

    def tracks(self, remote_id: str) -> List[str]:
        return list(self.playlists[remote_id]["tracks"])

    def edit_remotely(self, remote_id: str, tracks: List[str]) -> None:
        self.playlists[remote_id]["tracks"] = list(tracks)
        self.playlists[remote_id]["version"] += 1

    def _enter(self, operation: str, state: Optional[ProviderState] = None) -> None:
        self.calls[operation] += 1
        if self.errors[operation]:
            raise self.errors[operation].pop(0)
        if state is not None:
            token = (state.token_data or {}).get("access_token")
            if token not in self.valid_tokens:
                raise AuthExpiredError("token rejected")

    # ---- provider contract ----

    def init_provider(self, config: ProviderConfig) -> ProviderState:
        return ProviderState(config=config)

    def refresh_credentials(self, state: ProviderState):
        self._enter("refresh_credentials")
        if self.refresh_error is not None:
            raise self.refresh_error
        self._refreshes += 1
        token = {"access_token": f"fresh-{self._refreshes}", "refresh_token": "r1"}
        self.valid_tokens.add(token["access_token"])
        return state.with_token(token), token

    def search_track(self, state: ProviderState, query: TrackQuery):
        self._enter("search_track", state)
        name = Path(query.local_path).name
        if name not in self.catalog:
            raise TrackNotFoundError(f"no match for {name}")
        return state, self.catalog[name]

    def get_playlist(self, state: ProviderState, remote_id: str):
        self._enter("get_playlist", state)
        if remote_id not in self.playlists:
            raise RemotePlaylistNotFoundError("gone", remote_id=remote_id)
        return state, RemotePlaylist(
            remote_id=remote_id,
            snapshot_id=self.snapshot(remote_id),
            track_ids=tuple(self.playlists[remote_id]["tracks"]),
        )

    def create_playlist(self, state: ProviderState, name: str, description: str = ""):
        self._enter("create_playlist", state)
        remote_id = self.add_playlist(name)
        return state, (remote_id, self.snapshot(remote_id))

    def apply_diff(
        self, state: ProviderState, remote_id: str, expected_snapshot: str, diff: PlaylistDiff
    ):
        self._enter("apply_diff", state)
        while self.external_edits:
            self.external_edits.pop(0)()
        if remote_id not in self.playlists:
            raise RemotePlaylistNotFoundError("gone", remote_id=remote_id)
        if self.snapshot(remote_id) != expected_snapshot:
            raise StaleSnapshotError("stale", current_snapshot=self.snapshot(remote_id))
        for insertion in diff.insertions:
            if insertion.track_id in self.rejected:
                raise TrackNotFoundError("rejected", remote_track_id=insertion.track_id)
        if diff.is_empty:
            return state, self.snapshot(remote_id)

        playlist = self.playlists[remote_id]
        playlist["tracks"] = apply_diff_locally(playlist["tracks"], diff)
        playlist["version"] += 1
        self.mutations += 1
        return state, self.snapshot(remote_id)

    def rename_playlist(self, state: ProviderState, remote_id: str, name: str):
        self._enter("rename_playlist", state)
        if remote_id not in self.playlists:
            raise RemotePlaylistNotFoundError("gone", remote_id=remote_id)
        self.playlists[remote_id]["name"] = name
        return state, None

    def delete_playlist(self, state: ProviderState, remote_id: str):
        self._enter("delete_playlist", state)
        self.playlists.pop(remote_id, None)
        return state, None


@pytest.fixture
def sync_db(tmp_path):
    """Temporary sync database with the schema created."""
    db_path = tmp_path / "playlist-sync.db"
    db_module.set_database_path(db_path)
    db_module.init_database()
    yield db_path
    db_module.set_database_path(None)


@pytest.fixture
def library(tmp_path):
    """Empty library root folder."""
    root = tmp_path / "Music"
    root.mkdir()
    return root


@pytest.fixture
def config(library):
    config = Config()
    config.library.root_folder = str(library)
    config.worker.provider = "fake"
    return config


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    """Records every sleep a session or guard would have done."""
    return []


@pytest.fixture
def session(sync_db, fake_provider, sleeps):
    db_module.save_credential("fake", {"access_token": "good", "refresh_token": "r1"})
    guard = CredentialGuard("fake", fake_provider, HOLDER, wait_seconds=1, sleep=sleeps.append)
    state = guard.load(fake_provider.init_provider(ProviderConfig(name="fake")))
    return ProviderSession(
        fake_provider, state, guard, max_retries=3, max_retry_wait=60, sleep=sleeps.append
    )


@pytest.fixture
def ctx(config, session):
    return SyncContext(config=config, session=session, holder=HOLDER)


@pytest.fixture
def make_track():
    """Create an (empty) audio file and its folders."""

    def _make(path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
        return path

    return _make
