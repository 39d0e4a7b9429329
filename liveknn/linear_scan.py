"""
Linear Scan kNN
===============

Brute-force kNN supplier. Nothing is materialized; every query scans the
current population through the distance query. It serves the same contract
as the materialized store and is the from-scratch reference it must agree
with.
"""

import heapq
import math
from typing import Any, Dict, Iterable, Optional, Set

from .distance import DistanceQuery
from .neighbors import NeighborEntry, NeighborList


def checked_distance(value: float, a: Any, b: Any) -> float:
    """Reject undefined distances before they poison an ordering."""
    if math.isnan(value):
        raise ValueError(f"Distance between {a!r} and {b!r} is undefined (NaN)")
    return value


def scan_neighbors(
    distance_query: DistanceQuery,
    owner: int,
    candidates: Iterable[int],
    k: int,
) -> NeighborList:
    """k nearest neighbors of owner among candidates, owner excluded."""
    entries = (
        NeighborEntry(checked_distance(distance_query.distance(owner, c), owner, c), c)
        for c in candidates
        if c != owner
    )
    return NeighborList(heapq.nsmallest(k, entries))


def scan_object(
    distance_query: DistanceQuery,
    obj: Any,
    candidates: Iterable[int],
    k: int,
) -> NeighborList:
    """k nearest neighbors of an ad hoc object among candidates."""
    entries = (
        NeighborEntry(
            checked_distance(distance_query.distance_to_object(obj, c), "object", c), c
        )
        for c in candidates
    )
    return NeighborList(heapq.nsmallest(k, entries))


class LinearScanKNN:
    """
    kNN and RkNN by exhaustive scan over the population.

    Usage:
        scan = LinearScanKNN(DistanceQuery(objects, EuclideanDistance()), k=5)
        scan.query(owner)
        scan.reverse_query({owner})
    """

    def __init__(self, distance_query: DistanceQuery, k: int):
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        self.distance_query = distance_query
        self.k = k

    @property
    def relation(self):
        return self.distance_query.relation

    def query(self, owner: int, k: Optional[int] = None) -> NeighborList:
        if owner not in self.relation:
            raise KeyError(owner)
        return scan_neighbors(
            self.distance_query, owner, self.relation.ids(), self.k if k is None else k
        )

    def query_for_object(self, obj: Any, k: Optional[int] = None) -> NeighborList:
        return scan_object(
            self.distance_query, obj, self.relation.ids(), self.k if k is None else k
        )

    def reverse_query(self, targets: Iterable[int]) -> Dict[int, Set[int]]:
        targets = set(targets)
        result: Dict[int, Set[int]] = {t: set() for t in targets}
        for owner in self.relation.ids():
            for neighbor_id in self.query(owner).ids:
                if neighbor_id in result:
                    result[neighbor_id].add(owner)
        return result

    def __repr__(self) -> str:
        return f"LinearScanKNN(k={self.k}, {self.distance_query!r})"
