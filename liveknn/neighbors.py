"""
Neighbor Lists
==============

NeighborEntry and NeighborList, the value types every kNN supplier returns.

A NeighborList is immutable. Stores replace an owner's list wholesale when
it changes, so a reader holding a list never sees it change underneath it.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union


class InvariantViolation(Exception):
    """Raised when a neighbor list is malformed."""

    pass


@dataclass(frozen=True, slots=True, order=True)
class NeighborEntry:
    """
    One (distance, id) neighbor.

    Field order makes the dataclass ordering the neighbor ordering:
    ascending distance, ties broken by identifier.
    """

    distance: float
    id: int

    def __repr__(self) -> str:
        return f"{self.id}@{self.distance:g}"


class NeighborList(Sequence[NeighborEntry]):
    """
    Ordered k nearest neighbors of one owner under one distance function.

    Usage:
        knn = NeighborList.from_pairs([(1, 0.5), (4, 0.7)])
        knn.ids           # (1, 4)
        knn.k_distance    # 0.7
        knn[:1]           # NeighborList with the nearest neighbor only
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[NeighborEntry] = ()):
        self._entries: Tuple[NeighborEntry, ...] = tuple(entries)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[int, float]]) -> "NeighborList":
        """Build a list from (id, distance) pairs, sorting them."""
        return cls(sorted(NeighborEntry(float(d), i) for i, d in pairs))

    @property
    def ids(self) -> Tuple[int, ...]:
        return tuple(e.id for e in self._entries)

    @property
    def distances(self) -> Tuple[float, ...]:
        return tuple(e.distance for e in self._entries)

    @property
    def k_distance(self) -> float:
        """Distance of the farthest entry, NaN for an empty list."""
        if not self._entries:
            return math.nan
        return self._entries[-1].distance

    def worst(self) -> Optional[NeighborEntry]:
        return self._entries[-1] if self._entries else None

    def contains(self, obj_id: int) -> bool:
        return any(e.id == obj_id for e in self._entries)

    def validate(self, owner: int, expected_length: int) -> None:
        """
        Check the list invariants.

        Raises:
            InvariantViolation: On wrong length, bad ordering, duplicate
                identifiers, or the owner listing itself.
        """
        if len(self._entries) != expected_length:
            raise InvariantViolation(
                f"Neighbor list of {owner} has {len(self._entries)} entries, "
                f"expected {expected_length}"
            )
        seen = set()
        previous = None
        for entry in self._entries:
            if entry.id == owner:
                raise InvariantViolation(f"Neighbor list of {owner} lists itself")
            if entry.id in seen:
                raise InvariantViolation(
                    f"Neighbor list of {owner} lists {entry.id} twice"
                )
            if previous is not None and entry < previous:
                raise InvariantViolation(
                    f"Neighbor list of {owner} is not sorted: {previous!r} before {entry!r}"
                )
            seen.add(entry.id)
            previous = entry

    def __getitem__(self, index: Union[int, slice]):
        if isinstance(index, slice):
            return NeighborList(self._entries[index])
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[NeighborEntry]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, NeighborList):
            return self._entries == other._entries
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        return f"NeighborList({list(self._entries)!r})"


def merge_neighbors(
    current: NeighborList, candidates: Iterable[NeighborEntry], k: int
) -> NeighborList:
    """Merge candidate entries into a list, keeping the k nearest."""
    merged: List[NeighborEntry] = sorted([*current, *candidates])
    return NeighborList(merged[:k])
