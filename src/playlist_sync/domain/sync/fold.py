"""
Fold a playlist's unsynced change events into one net change.

Folding is pure: events in, FoldedChanges out. Paths are resolved to remote
ids later, and build_target() turns the result into the list the remote
playlist should hold.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from playlist_sync.core.models import ChangeEvent, EventAction


@dataclass
class FoldedChanges:
    """Net effect of a run of events on one playlist."""

    playlist_name: str
    events: List[ChangeEvent] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    order: Optional[List[str]] = None
    created: bool = False
    deleted: bool = False
    # Start from an empty playlist instead of the remote contents (delete then create)
    reset: bool = False
    rename_to: Optional[str] = None

    @property
    def event_ids(self) -> List[int]:
        return [event.id for event in self.events]

    @property
    def has_track_changes(self) -> bool:
        return bool(self.added or self.removed or self.order is not None or self.reset)

    @property
    def is_noop(self) -> bool:
        return not (
            self.has_track_changes or self.created or self.deleted or self.rename_to
        )

    def track_paths(self) -> List[str]:
        """Every path the changes refer to, first mention first."""
        paths: Dict[str, None] = {}
        for path in [*self.added, *self.removed, *(self.order or [])]:
            paths.setdefault(path, None)
        return list(paths)


def fold_events(playlist_name: str, events: Sequence[ChangeEvent]) -> FoldedChanges:
    """Collapse events (already in timestamp order) into their net effect.

    An add and a later remove of the same path cancel, and so do a remove and
    a later add. Repeated adds count once. The last reorder wins. A delete
    discards everything before it; a create after a delete starts the
    playlist over. Folding stops after a rename: later events under the old
    name belong to a different playlist.
    """
    folded = FoldedChanges(playlist_name)
    net: Dict[str, EventAction] = {}

    for event in events:
        folded.events.append(event)
        action = event.action

        if action in (EventAction.ADD, EventAction.REMOVE):
            if not event.track_path:
                logger.warning(f"Event {event.id} ({action.value}) has no track path")
                continue
            opposite = EventAction.REMOVE if action == EventAction.ADD else EventAction.ADD
            if net.get(event.track_path) == opposite:
                del net[event.track_path]
            else:
                net[event.track_path] = action

        elif action == EventAction.REORDER:
            order = (event.extra or {}).get("order")
            if isinstance(order, list):
                folded.order = [str(p) for p in order]
            else:
                logger.warning(f"Reorder event {event.id} carries no order")

        elif action == EventAction.DELETE:
            net.clear()
            folded.order = None
            folded.created = False
            folded.reset = False
            folded.deleted = True

        elif action == EventAction.CREATE:
            if folded.deleted:
                folded.deleted = False
                folded.reset = True
            folded.created = True

        elif action == EventAction.RENAME:
            folded.rename_to = (event.extra or {}).get("to")
            if not folded.rename_to:
                logger.warning(f"Rename event {event.id} has no target name")
                continue
            break

    folded.added = [p for p, a in net.items() if a == EventAction.ADD]
    folded.removed = [p for p, a in net.items() if a == EventAction.REMOVE]
    return folded


def build_target(
    current: Sequence[str],
    added: Sequence[str],
    removed: Sequence[str],
    order: Optional[Sequence[str]] = None,
) -> List[str]:
    """Remote ids the playlist should hold after applying folded changes.

    Removed ids drop every occurrence; added ids are appended once unless
    already present; an order sorts ids it names by their position in it and
    leaves the others after them in their current relative order. An id both
    removed and added (a moved file) stays where it is.
    """
    dropped = set(removed) - set(added)
    target = [t for t in current if t not in dropped]

    present = set(target)
    for track_id in added:
        if track_id not in present:
            target.append(track_id)
            present.add(track_id)

    if order:
        rank: Dict[str, int] = {}
        for position, track_id in enumerate(order):
            rank.setdefault(track_id, position)
        last = len(rank)
        target = [
            t
            for _, t in sorted(
                enumerate(target), key=lambda pair: (rank.get(pair[1], last), pair[0])
            )
        ]
    return target
