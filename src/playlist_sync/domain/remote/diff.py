"""
Minimal ordered diff between two remote track lists.

Tracks that already appear in the right relative order (a longest
increasing subsequence of their target positions) stay where they are.
Everything else is removed from the current list and inserted at its target
position. Removals are applied by descending position, then insertions by
ascending position; after that the current list equals the target.
"""

from bisect import bisect_left
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple


@dataclass(frozen=True)
class Removal:
    position: int  # index in the current list
    track_id: str


@dataclass(frozen=True)
class Insertion:
    position: int  # index in the target list
    track_id: str


@dataclass(frozen=True)
class PlaylistDiff:
    removals: Tuple[Removal, ...] = field(default_factory=tuple)
    insertions: Tuple[Insertion, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.removals and not self.insertions

    @property
    def mutation_count(self) -> int:
        return len(self.removals) + len(self.insertions)

    def insertion_runs(self) -> List[Tuple[int, List[str]]]:
        """Group insertions with consecutive target positions.

        Returns:
            [(start_position, [track_id, ...]), ...] in ascending order
        """
        runs: List[Tuple[int, List[str]]] = []
        for insertion in self.insertions:
            if runs:
                start, ids = runs[-1]
                if start + len(ids) == insertion.position:
                    ids.append(insertion.track_id)
                    continue
            runs.append((insertion.position, [insertion.track_id]))
        return runs

    def summary(self) -> str:
        return f"-{len(self.removals)} +{len(self.insertions)}"


def _match_target_positions(
    current: Sequence[str], target: Sequence[str]
) -> List[Tuple[int, int]]:
    """Pair each current index with a target index holding the same id.

    The k-th occurrence of an id in current pairs with its k-th occurrence
    in target; surplus duplicates stay unpaired.
    """
    positions: Dict[str, deque] = defaultdict(deque)
    for index, track_id in enumerate(target):
        positions[track_id].append(index)

    pairs = []
    for index, track_id in enumerate(current):
        queue = positions.get(track_id)
        if queue:
            pairs.append((index, queue.popleft()))
    return pairs


def _longest_increasing(pairs: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Longest subsequence of pairs whose target indices strictly increase."""
    if not pairs:
        return []

    tails: List[int] = []  # smallest tail target index per subsequence length
    tail_at: List[int] = []  # index into pairs for each entry of tails
    parent = [-1] * len(pairs)

    for i, (_, target_index) in enumerate(pairs):
        length = bisect_left(tails, target_index)
        if length == len(tails):
            tails.append(target_index)
            tail_at.append(i)
        else:
            tails[length] = target_index
            tail_at[length] = i
        parent[i] = tail_at[length - 1] if length > 0 else -1

    result = []
    i = tail_at[-1]
    while i != -1:
        result.append(pairs[i])
        i = parent[i]
    result.reverse()
    return result


def compute_diff(current: Sequence[str], target: Sequence[str]) -> PlaylistDiff:
    """Compute the removals and insertions turning current into target."""
    kept = _longest_increasing(_match_target_positions(current, target))
    kept_current: Set[int] = {c for c, _ in kept}
    kept_target: Set[int] = {t for _, t in kept}

    removals = tuple(
        Removal(position, current[position])
        for position in range(len(current) - 1, -1, -1)
        if position not in kept_current
    )
    insertions = tuple(
        Insertion(position, target[position])
        for position in range(len(target))
        if position not in kept_target
    )
    return PlaylistDiff(removals=removals, insertions=insertions)


def apply_diff(current: Sequence[str], diff: PlaylistDiff) -> List[str]:
    """Apply a diff to a plain list (what a provider does remotely)."""
    result = list(current)
    for removal in sorted(diff.removals, key=lambda r: r.position, reverse=True):
        if result[removal.position] != removal.track_id:
            raise ValueError(
                f"Removal at {removal.position} expected {removal.track_id}, "
                f"found {result[removal.position]}"
            )
        del result[removal.position]
    for insertion in sorted(diff.insertions, key=lambda i: i.position):
        result.insert(insertion.position, insertion.track_id)
    return result
