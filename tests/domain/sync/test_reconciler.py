"""Tests for full reconciliation of local folders against remote playlists."""

import pytest

from playlist_sync.core import database
from playlist_sync.core.models import EventAction
from playlist_sync.domain.sync import leases
from playlist_sync.domain.sync.reconciler import run_reconcile_once


@pytest.fixture
def summer_folder(library, make_track, fake_provider):
    """Local Summer folder with X.mp3 -> T1 and Y.mp3 -> T2."""
    make_track(library / "Summer" / "X.mp3")
    make_track(library / "Summer" / "Y.mp3")
    fake_provider.catalog.update({"X.mp3": "T1", "Y.mp3": "T2"})
    return library / "Summer"


class TestReconcile:
    def test_repairs_drift_then_converges(self, ctx, fake_provider, summer_folder):
        """Remote edits are overwritten; a second pass writes nothing."""
        remote_id = fake_provider.add_playlist("Summer", ["T9", "T1"])
        database.save_playlist_mapping("Summer", remote_id, "S0")

        first = run_reconcile_once(ctx)

        assert first.reconciled == ["Music", "Summer"]
        assert fake_provider.tracks(remote_id) == ["T1", "T2"]
        music = database.get_playlist_mapping("Music")
        assert fake_provider.tracks(music.remote_id) == ["T1", "T2"]

        written = fake_provider.mutations
        second = run_reconcile_once(ctx)

        assert second.mutations == 0
        assert fake_provider.mutations == written
        assert fake_provider.calls["search_track"] == 2

    def test_marks_events_before_scan_synced(self, ctx, summer_folder):
        database.enqueue_event(
            "Summer", EventAction.ADD, str(summer_folder / "X.mp3"), timestamp_ms=1
        )
        later = database.now_ms() + 10**9
        database.enqueue_event(
            "Summer", EventAction.ADD, str(summer_folder / "Y.mp3"), timestamp_ms=later
        )

        run_reconcile_once(ctx)

        [pending] = database.get_unsynced_events("Summer")
        assert pending.timestamp == later

    def test_defers_pending_delete_and_rename(self, ctx, fake_provider, library, make_track):
        make_track(library / "Summer" / "X.mp3")
        make_track(library / "Autumn" / "X.mp3")
        database.enqueue_event("Summer", EventAction.DELETE)
        database.enqueue_event("Fall", EventAction.RENAME, extra={"from": "Fall", "to": "Autumn"})

        report = run_reconcile_once(ctx)

        assert set(report.deferred) == {"Summer", "Autumn"}
        assert database.get_playlist_mapping("Summer") is None
        assert database.get_playlist_mapping("Autumn") is None
        assert database.count_unsynced_events() == 2

    def test_busy_playlist_is_skipped(self, ctx, fake_provider, summer_folder):
        leases.acquire("Summer", "other-worker", ttl_seconds=600)

        report = run_reconcile_once(ctx)

        assert report.busy == ["Summer"]
        assert database.get_playlist_mapping("Summer") is None

    def test_missing_remote_playlist_is_recreated(self, ctx, fake_provider, summer_folder):
        database.save_playlist_mapping("Summer", "pl-gone", "S3")

        report = run_reconcile_once(ctx)

        mapping = database.get_playlist_mapping("Summer")
        assert "Summer" in report.reconciled
        assert mapping.remote_id != "pl-gone"
        assert fake_provider.tracks(mapping.remote_id) == ["T1", "T2"]

    def test_unresolved_tracks_are_left_out(self, ctx, fake_provider, library, make_track):
        make_track(library / "Summer" / "X.mp3")
        make_track(library / "Summer" / "Nobody - Nothing.mp3")
        fake_provider.catalog["X.mp3"] = "T1"

        run_reconcile_once(ctx)

        mapping = database.get_playlist_mapping("Summer")
        assert fake_provider.tracks(mapping.remote_id) == ["T1"]
        assert database.get_track_cache_stats()["unresolved"] == 1

    def test_rejected_track_does_not_block_playlist(self, ctx, fake_provider, summer_folder):
        fake_provider.rejected.add("T1")

        first = run_reconcile_once(ctx)

        assert first.failed == {}
        assert first.reconciled == ["Music", "Summer"]
        summer = database.get_playlist_mapping("Summer")
        assert fake_provider.tracks(summer.remote_id) == ["T2"]
        assert database.get_track_resolution(str(summer_folder / "X.mp3")).resolved is False

        second = run_reconcile_once(ctx)

        assert second.mutations == 0
        assert fake_provider.calls["search_track"] == 2


class TestOrphans:
    def test_orphan_kept_by_default(self, ctx, fake_provider, library):
        remote_id = fake_provider.add_playlist("Gone", ["T1"])
        database.save_playlist_mapping("Gone", remote_id, "S0")

        report = run_reconcile_once(ctx)

        assert report.orphans == ["Gone"]
        assert remote_id in fake_provider.playlists
        assert database.get_playlist_mapping("Gone") is not None

    def test_orphan_deleted_when_enabled(self, ctx, fake_provider, library):
        ctx.config.worker.reconcile_delete_orphans = True
        remote_id = fake_provider.add_playlist("Gone", ["T1"])
        database.save_playlist_mapping("Gone", remote_id, "S0")

        report = run_reconcile_once(ctx)

        assert report.orphans == ["Gone"]
        assert remote_id not in fake_provider.playlists
        assert database.get_playlist_mapping("Gone") is None
