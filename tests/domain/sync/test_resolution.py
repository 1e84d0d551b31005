"""Tests for the cached track resolver."""

from playlist_sync.core import database
from playlist_sync.domain.sync.resolution import TrackResolver


class TestTrackResolver:
    def test_search_result_is_cached(self, session, fake_provider):
        fake_provider.catalog["X.mp3"] = "T1"
        resolver = TrackResolver(session)

        assert resolver.resolve("/m/Summer/X.mp3") == "T1"
        assert resolver.resolve("/m/Summer/X.mp3") == "T1"

        assert fake_provider.calls["search_track"] == 1
        assert resolver.stats == {"cache_hits": 1, "searches": 1, "unresolved": 0}

    def test_recent_miss_is_not_searched_again(self, session, fake_provider):
        resolver = TrackResolver(session, retry_hours=24)

        assert resolver.resolve("/m/Summer/Nothing.mp3") is None
        fake_provider.catalog["Nothing.mp3"] = "T5"
        assert resolver.resolve("/m/Summer/Nothing.mp3") is None

        assert fake_provider.calls["search_track"] == 1
        assert resolver.stats["unresolved"] == 2

    def test_old_miss_is_searched_again(self, session, fake_provider):
        database.save_track_resolution("/m/Summer/Late.mp3", None, resolved_at=1)
        fake_provider.catalog["Late.mp3"] = "T5"
        resolver = TrackResolver(session, retry_hours=24)

        assert resolver.resolve("/m/Summer/Late.mp3") == "T5"
        assert database.get_track_resolution("/m/Summer/Late.mp3").resolved

    def test_remote_id_prefix_bypasses_cache(self, session, fake_provider):
        resolver = TrackResolver(session)
        assert resolver.resolve("uri::spotify:track:abc") == "spotify:track:abc"
        assert sum(fake_provider.calls.values()) == 0

    def test_invalidated_track_waits_for_retry_window(self, session, fake_provider):
        fake_provider.catalog["X.mp3"] = "T1"
        resolver = TrackResolver(session, retry_hours=24)
        resolver.resolve("/m/Summer/X.mp3")

        resolver.invalidate("T1")

        assert resolver.resolve("/m/Summer/X.mp3") is None
        assert fake_provider.calls["search_track"] == 1

    def test_invalidated_track_searched_after_window(self, session, fake_provider):
        fake_provider.catalog["X.mp3"] = "T1"
        resolver = TrackResolver(session, retry_hours=0)
        resolver.resolve("/m/Summer/X.mp3")

        resolver.invalidate("T1")
        fake_provider.catalog["X.mp3"] = "T2"

        assert resolver.resolve("/m/Summer/X.mp3") == "T2"
        assert fake_provider.calls["search_track"] == 2

    def test_resolve_many_keeps_input_keys(self, session, fake_provider):
        fake_provider.catalog["A.mp3"] = "T1"
        resolver = TrackResolver(session)
        assert resolver.resolve_many(["/m/A.mp3", "/m/B.mp3"]) == {
            "/m/A.mp3": "T1",
            "/m/B.mp3": None,
        }
