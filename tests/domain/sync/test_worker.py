"""Tests for draining the change log into remote playlists."""

import pytest

from playlist_sync.core import database
from playlist_sync.core.errors import AuthFailureError, StaleSnapshotError
from playlist_sync.core.models import EventAction
from playlist_sync.domain.sync import leases
from playlist_sync.domain.sync.credentials import guard_name
from playlist_sync.domain.sync.worker import run_worker_once, sync_playlist


@pytest.fixture
def summer(fake_provider, sync_db):
    """An existing remote "Summer" playlist mapped at S0."""
    remote_id = fake_provider.add_playlist("Summer")
    database.save_playlist_mapping("Summer", remote_id, "S0")
    return remote_id


class TestSyncPlaylist:
    def test_added_track_reaches_remote(self, ctx, fake_provider, summer, library, make_track):
        """Adding Summer/X.mp3 resolves it to T1 and moves the snapshot S0 -> S1."""
        track = make_track(library / "Summer" / "X.mp3")
        fake_provider.catalog["X.mp3"] = "T1"
        database.enqueue_event("Summer", EventAction.ADD, str(track))

        report = run_worker_once(ctx)

        assert report.synced == ["Summer"]
        assert report.events_synced == 1
        assert report.mutations == 1
        assert fake_provider.tracks(summer) == ["T1"]
        assert database.get_playlist_mapping("Summer").remote_snapshot_id == "S1"
        assert database.get_track_resolution(str(track)).remote_id == "T1"
        assert database.count_unsynced_events() == 0

    def test_stale_snapshot_is_refetched(self, ctx, fake_provider, summer, library, make_track):
        """A concurrent edit between read and write is merged, not overwritten."""
        fake_provider.edit_remotely(summer, ["T0"])
        database.update_playlist_snapshot("Summer", "S1")
        fake_provider.external_edits.append(
            lambda: fake_provider.edit_remotely(summer, ["T0", "T9"])
        )
        track = make_track(library / "Summer" / "X.mp3")
        fake_provider.catalog["X.mp3"] = "T1"
        database.enqueue_event("Summer", EventAction.ADD, str(track))

        report = run_worker_once(ctx)

        assert report.synced == ["Summer"]
        assert fake_provider.tracks(summer) == ["T0", "T9", "T1"]
        assert database.get_playlist_mapping("Summer").remote_snapshot_id == "S3"
        assert fake_provider.calls["apply_diff"] == 2

    def test_stale_twice_leaves_events_for_next_cycle(
        self, ctx, fake_provider, summer, library, make_track
    ):
        track = make_track(library / "Summer" / "X.mp3")
        fake_provider.catalog["X.mp3"] = "T1"
        fake_provider.errors["apply_diff"] = [StaleSnapshotError("a"), StaleSnapshotError("b")]
        database.enqueue_event("Summer", EventAction.ADD, str(track))

        report = run_worker_once(ctx)

        assert "Summer" in report.failed
        assert database.count_unsynced_events() == 1
        assert fake_provider.tracks(summer) == []

    def test_auth_failure_stops_cycle(self, ctx, fake_provider, summer, library):
        """With refresh rejected nothing is marked synced and the cycle ends."""
        fake_provider.valid_tokens.clear()
        fake_provider.refresh_error = AuthFailureError("refresh token revoked")
        fake_provider.add_playlist("Winter")
        database.enqueue_event(
            "Summer", EventAction.ADD, str(library / "Summer" / "X.mp3"), timestamp_ms=100
        )
        database.enqueue_event(
            "Winter", EventAction.ADD, str(library / "Winter" / "Y.mp3"), timestamp_ms=200
        )

        report = run_worker_once(ctx)

        assert report.stopped == "auth_failure"
        assert list(report.failed) == ["Summer"]
        assert database.count_unsynced_events() == 2
        assert leases.get_lease(guard_name("fake")) is None
        assert leases.get_lease("Summer") is None

    def test_cache_hit_across_cycles(self, ctx, fake_provider, summer, library, make_track):
        """A track resolved once is not searched again."""
        winter = fake_provider.add_playlist("Winter")
        database.save_playlist_mapping("Winter", winter, "S0")
        track = make_track(library / "Summer" / "X.mp3")
        fake_provider.catalog["X.mp3"] = "T1"

        database.enqueue_event("Summer", EventAction.ADD, str(track))
        run_worker_once(ctx)
        database.enqueue_event("Winter", EventAction.ADD, str(track))
        run_worker_once(ctx)

        assert fake_provider.calls["search_track"] == 1
        assert ctx.resolver.stats["cache_hits"] == 1
        assert fake_provider.tracks(winter) == ["T1"]

    def test_replayed_event_writes_nothing(self, ctx, fake_provider, summer, library, make_track):
        track = make_track(library / "Summer" / "X.mp3")
        fake_provider.catalog["X.mp3"] = "T1"
        database.enqueue_event("Summer", EventAction.ADD, str(track))
        run_worker_once(ctx)

        database.enqueue_event("Summer", EventAction.ADD, str(track))
        report = run_worker_once(ctx)

        assert report.mutations == 0
        assert fake_provider.mutations == 1
        assert fake_provider.tracks(summer) == ["T1"]
        assert database.count_unsynced_events() == 0

    def test_cancelled_events_skip_provider(self, ctx, fake_provider, summer):
        database.enqueue_event("Summer", EventAction.ADD, "/m/Summer/X.mp3")
        database.enqueue_event("Summer", EventAction.REMOVE, "/m/Summer/X.mp3")

        assert sync_playlist(ctx, "Summer") == 2
        assert sum(fake_provider.calls.values()) == 0

    def test_unresolved_track_is_skipped(self, ctx, fake_provider, summer, library, make_track):
        """A track with no remote match is cached as a miss and excluded."""
        track = make_track(library / "Summer" / "Unknown.mp3")
        database.enqueue_event("Summer", EventAction.ADD, str(track))

        report = run_worker_once(ctx)

        assert report.synced == ["Summer"]
        assert fake_provider.tracks(summer) == []
        assert database.get_track_resolution(str(track)).resolved is False

    def test_remote_id_paths_skip_search(self, ctx, fake_provider, summer):
        database.enqueue_event("Summer", EventAction.ADD, "uri::T7")

        run_worker_once(ctx)

        assert fake_provider.tracks(summer) == ["T7"]
        assert fake_provider.calls["search_track"] == 0

    def test_reorder(self, ctx, fake_provider, summer):
        fake_provider.edit_remotely(summer, ["T1", "T2", "T3"])
        database.enqueue_event(
            "Summer", EventAction.REORDER, extra={"order": ["uri::T3", "uri::T1", "uri::T2"]}
        )

        run_worker_once(ctx)

        assert fake_provider.tracks(summer) == ["T3", "T1", "T2"]

    def test_rejected_track_is_left_out(self, ctx, fake_provider, summer, library, make_track):
        """The rest of the playlist still syncs; the refused track stays unresolved."""
        bad = make_track(library / "Summer" / "Bad.mp3")
        good = make_track(library / "Summer" / "Good.mp3")
        fake_provider.catalog.update({"Bad.mp3": "T1", "Good.mp3": "T2"})
        fake_provider.rejected.add("T1")
        database.enqueue_event("Summer", EventAction.ADD, str(bad))
        database.enqueue_event("Summer", EventAction.ADD, str(good))

        report = run_worker_once(ctx)

        assert report.failed == {}
        assert report.synced == ["Summer"]
        assert fake_provider.tracks(summer) == ["T2"]
        assert database.count_unsynced_events() == 0
        resolution = database.get_track_resolution(str(bad))
        assert resolution is not None and resolution.resolved is False

        database.enqueue_event("Summer", EventAction.ADD, str(bad))
        second = run_worker_once(ctx)

        assert second.failed == {}
        assert second.mutations == 0
        assert fake_provider.tracks(summer) == ["T2"]
        assert fake_provider.calls["search_track"] == 2
        assert database.count_unsynced_events() == 0


class TestPlaylistLifecycle:
    def test_first_sync_creates_remote_playlist(self, ctx, fake_provider, library, make_track):
        track = make_track(library / "Summer" / "X.mp3")
        fake_provider.catalog["X.mp3"] = "T1"
        database.enqueue_event("Summer", EventAction.CREATE)
        database.enqueue_event("Summer", EventAction.ADD, str(track))

        run_worker_once(ctx)

        mapping = database.get_playlist_mapping("Summer")
        assert fake_provider.playlists[mapping.remote_id]["name"] == "Summer"
        assert fake_provider.tracks(mapping.remote_id) == ["T1"]
        assert mapping.remote_snapshot_id == "S1"

    def test_nested_folder_uses_remote_delimiter(self, ctx, fake_provider):
        database.enqueue_event("Artist/Album", EventAction.CREATE)

        run_worker_once(ctx)

        mapping = database.get_playlist_mapping("Artist/Album")
        assert fake_provider.playlists[mapping.remote_id]["name"] == "Artist| Album"

    def test_delete(self, ctx, fake_provider, summer):
        database.enqueue_event("Summer", EventAction.ADD, "uri::T1")
        database.enqueue_event("Summer", EventAction.DELETE)

        run_worker_once(ctx)

        assert summer not in fake_provider.playlists
        assert database.get_playlist_mapping("Summer") is None
        assert fake_provider.calls["apply_diff"] == 0

    def test_rename_keeps_remote_playlist(self, ctx, fake_provider, summer):
        database.enqueue_event(
            "Summer", EventAction.RENAME, extra={"from": "Summer", "to": "Summer 2024"}
        )

        run_worker_once(ctx)

        assert fake_provider.playlists[summer]["name"] == "Summer 2024"
        assert database.get_playlist_mapping("Summer") is None
        assert database.get_playlist_mapping("Summer 2024").remote_id == summer

    def test_rename_of_unsynced_playlist_queues_new_one(
        self, ctx, fake_provider, library, make_track
    ):
        track = make_track(library / "New" / "a.mp3")
        fake_provider.catalog["a.mp3"] = "T1"
        database.enqueue_event("Old", EventAction.RENAME, extra={"from": "Old", "to": "New"})

        run_worker_once(ctx, ["Old"])

        queued = database.get_unsynced_events("New")
        assert [e.action for e in queued] == [EventAction.CREATE, EventAction.ADD]
        assert queued[1].track_path == str(track)

        run_worker_once(ctx)

        mapping = database.get_playlist_mapping("New")
        assert fake_provider.tracks(mapping.remote_id) == ["T1"]

    def test_missing_remote_playlist_is_recreated(
        self, ctx, fake_provider, library, make_track
    ):
        """A 404 recreates the playlist from the local folder."""
        make_track(library / "Summer" / "X.mp3")
        track = make_track(library / "Summer" / "Y.mp3")
        fake_provider.catalog.update({"X.mp3": "T1", "Y.mp3": "T2"})
        database.save_playlist_mapping("Summer", "pl-gone", "S4")
        database.enqueue_event("Summer", EventAction.ADD, str(track))

        report = run_worker_once(ctx)

        mapping = database.get_playlist_mapping("Summer")
        assert report.synced == ["Summer"]
        assert mapping.remote_id != "pl-gone"
        assert fake_provider.tracks(mapping.remote_id) == ["T1", "T2"]


class TestWorkerCycle:
    def test_busy_playlist_is_skipped(self, ctx, fake_provider, summer):
        leases.acquire("Summer", "other-worker", ttl_seconds=600)
        database.enqueue_event("Summer", EventAction.ADD, "uri::T1")

        report = run_worker_once(ctx)

        assert report.busy == ["Summer"]
        assert database.count_unsynced_events() == 1
        assert leases.get_lease("Summer").holder == "other-worker"

    def test_backpressure_skips_remote_sync(self, ctx, fake_provider, summer):
        ctx.config.worker.queue_length_stop_cloud_sync_threshold = 1
        database.enqueue_event("Summer", EventAction.ADD, "uri::T1")
        database.enqueue_event("Summer", EventAction.ADD, "uri::T2")

        report = run_worker_once(ctx)

        assert report.stopped == "backpressure"
        assert sum(fake_provider.calls.values()) == 0
        assert database.count_unsynced_events() == 2

    def test_lease_released_after_sync(self, ctx, summer):
        database.enqueue_event("Summer", EventAction.ADD, "uri::T1")
        run_worker_once(ctx)
        assert leases.get_lease("Summer") is None
