"""Tests for folding change events and building the remote target."""

from playlist_sync.core.models import ChangeEvent, EventAction
from playlist_sync.domain.sync.fold import build_target, fold_events


def make_events(*entries):
    """entries: (action, track_path) or (action, track_path, extra)."""
    events = []
    for i, entry in enumerate(entries, start=1):
        action, path = entry[0], entry[1]
        extra = entry[2] if len(entry) > 2 else None
        events.append(
            ChangeEvent(
                id=i,
                timestamp=i * 10,
                playlist_name="Summer",
                action=action,
                track_path=path,
                extra=extra,
            )
        )
    return events


ADD, REMOVE = EventAction.ADD, EventAction.REMOVE


class TestFoldEvents:
    def test_add_then_remove_cancels(self):
        folded = fold_events("Summer", make_events((ADD, "x"), (REMOVE, "x")))
        assert folded.added == [] and folded.removed == []
        assert folded.is_noop
        assert folded.event_ids == [1, 2]

    def test_remove_then_add_cancels(self):
        folded = fold_events("Summer", make_events((REMOVE, "x"), (ADD, "x")))
        assert folded.is_noop

    def test_repeated_add_counts_once(self):
        folded = fold_events("Summer", make_events((ADD, "x"), (ADD, "x"), (ADD, "y")))
        assert folded.added == ["x", "y"]

    def test_add_remove_add_leaves_add(self):
        folded = fold_events("Summer", make_events((ADD, "x"), (REMOVE, "x"), (ADD, "x")))
        assert folded.added == ["x"]

    def test_last_reorder_wins(self):
        folded = fold_events(
            "Summer",
            make_events(
                (EventAction.REORDER, None, {"order": ["a", "b"]}),
                (EventAction.REORDER, None, {"order": ["b", "a"]}),
            ),
        )
        assert folded.order == ["b", "a"]

    def test_delete_discards_earlier_changes(self):
        folded = fold_events("Summer", make_events((ADD, "x"), (EventAction.DELETE, None)))
        assert folded.deleted
        assert folded.added == []

    def test_create_after_delete_starts_over(self):
        folded = fold_events(
            "Summer",
            make_events(
                (ADD, "x"),
                (EventAction.DELETE, None),
                (EventAction.CREATE, None),
                (ADD, "y"),
            ),
        )
        assert not folded.deleted
        assert folded.reset and folded.created
        assert folded.added == ["y"]

    def test_folding_stops_at_rename(self):
        """Events after a rename under the old name are left for a later pass."""
        folded = fold_events(
            "Summer",
            make_events(
                (ADD, "x"),
                (EventAction.RENAME, None, {"from": "Summer", "to": "Summer 2024"}),
                (ADD, "y"),
            ),
        )
        assert folded.rename_to == "Summer 2024"
        assert folded.added == ["x"]
        assert folded.event_ids == [1, 2]

    def test_track_paths_are_unique(self):
        folded = fold_events(
            "Summer",
            make_events(
                (ADD, "x"),
                (REMOVE, "y"),
                (EventAction.REORDER, None, {"order": ["x", "z"]}),
            ),
        )
        assert folded.track_paths() == ["x", "y", "z"]


class TestBuildTarget:
    def test_adds_append_and_removes_drop(self):
        assert build_target(["a", "b"], added=["c"], removed=["a"]) == ["b", "c"]

    def test_add_of_present_track_is_noop(self):
        assert build_target(["a", "b"], added=["a"], removed=[]) == ["a", "b"]

    def test_remove_drops_all_copies(self):
        assert build_target(["a", "b", "a"], added=[], removed=["a"]) == ["b"]

    def test_moved_file_keeps_position(self):
        """The same remote id removed under one path and added under another stays put."""
        assert build_target(["a", "b", "c"], added=["b"], removed=["b"]) == ["a", "b", "c"]

    def test_order_sorts_named_ids_and_keeps_rest_after(self):
        target = build_target(["a", "b", "c", "d"], added=[], removed=[], order=["c", "a"])
        assert target == ["c", "a", "b", "d"]

    def test_idempotent(self):
        """Applying the same folded change to its own result changes nothing."""
        once = build_target(["a", "b"], added=["c", "d"], removed=["a"], order=["d", "b", "c"])
        twice = build_target(once, added=["c", "d"], removed=["a"], order=["d", "b", "c"])
        assert once == twice == ["d", "b", "c"]
