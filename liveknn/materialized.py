"""
Materialized kNN Store
======================

Neighbor store that keeps the k nearest neighbors of every identifier in
its population, together with the reverse links answering "who lists X",
and keeps both exact across insertions and deletions.

Mutations run in two phases:

    pending = store.prepare_insert(ids)   # every distance evaluation happens here
    store.commit(pending)                 # applies the update, fires the event

prepare_* never touches the store, so a failing distance function leaves
the store exactly as it was. insert() and delete() run both phases in one
call. The population database prepares every store before committing any,
which makes a mutation atomic across stores as well.

Maintenance rules:
- Insert: a new identifier gets its list from a full scan of the enlarged
  population. An existing identifier takes a new object only if it sorts
  before its current worst entry (or the list is still short); the list is
  then cut back to k.
- Delete: identifiers that listed a deleted object drop it, and refill from
  the reduced population. Every other object sorted after the old worst
  entry, so only the non-listed remainder has to be scanned.
"""

import heapq
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from .distance import DistanceQuery
from .events import ChangeEvent, ChangeType, ListenerSet
from .linear_scan import checked_distance, scan_neighbors, scan_object
from .neighbors import InvariantViolation, NeighborEntry, NeighborList, merge_neighbors

logger = logging.getLogger(__name__)


@dataclass
class PendingUpdate:
    """A computed but not yet applied mutation of one store."""

    store: "MaterializedKNNStore"
    version: int
    kind: ChangeType
    objects: FrozenSet[int]
    lists: Dict[int, NeighborList] = field(default_factory=dict)
    updates: FrozenSet[int] = frozenset()

    def __repr__(self) -> str:
        return (
            f"PendingUpdate({self.kind.name} objects={sorted(self.objects)} "
            f"updates={sorted(self.updates)})"
        )


class MaterializedKNNStore:
    """
    Materialized kNN and RkNN relation for one distance function.

    Usage:
        store = MaterializedKNNStore(DistanceQuery(objects, EuclideanDistance()), k=3)
        store.materialize()
        store.register_listener(lambda event: print(event))

        store.insert([new_id])      # fires ChangeEvent(INSERT ...)
        store.query(new_id)         # NeighborList
        store.reverse_query({new_id})
        store.delete([new_id])      # fires ChangeEvent(DELETE ...)
    """

    def __init__(
        self,
        distance_query: DistanceQuery,
        k: int,
        check_invariants: bool = False,
        name: Optional[str] = None,
    ):
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        self.distance_query = distance_query
        self.k = k
        self.check_invariants = check_invariants
        self.name = name or distance_query.function.name

        self._population: Set[int] = set()
        self._knn: Dict[int, NeighborList] = {}
        self._rknn: Dict[int, Set[int]] = {}
        self._listeners = ListenerSet()
        self._version = 0

        # Spans mutation and listener dispatch
        self._lock = threading.RLock()

        self._stats = {
            "inserts": 0,
            "deletes": 0,
            "updated_lists": 0,
        }

    # ========================================================================
    # QUERIES
    # ========================================================================

    def query(self, owner: int, k: Optional[int] = None) -> NeighborList:
        """Current neighbor list of owner, or its first k entries."""
        with self._lock:
            knn = self._knn.get(owner)
            if knn is None:
                raise KeyError(owner)
            if k is None or k == self.k:
                return knn
            if k < 1 or k > self.k:
                raise ValueError(f"k must be between 1 and {self.k}, got {k}")
            return knn[:k]

    def query_for_object(self, obj: Any, k: Optional[int] = None) -> NeighborList:
        """k nearest population members of an ad hoc object. Read only."""
        with self._lock:
            candidates = sorted(self._population)
        return scan_object(self.distance_query, obj, candidates, self.k if k is None else k)

    def reverse_query(self, targets: Iterable[int]) -> Dict[int, Set[int]]:
        """Owners currently listing each target. Unknown targets map to an empty set."""
        with self._lock:
            return {t: set(self._rknn.get(t, ())) for t in targets}

    def expected_length(self, population_size: Optional[int] = None) -> int:
        if population_size is None:
            population_size = len(self._population)
        return max(0, min(self.k, population_size - 1))

    @property
    def population(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._population)

    def __len__(self) -> int:
        with self._lock:
            return len(self._population)

    def __contains__(self, owner: int) -> bool:
        with self._lock:
            return owner in self._population

    # ========================================================================
    # LISTENERS
    # ========================================================================

    def register_listener(self, listener: Callable[[ChangeEvent], None]) -> None:
        self._listeners.add(listener)

    def unregister_listener(self, listener: Callable[[ChangeEvent], None]) -> bool:
        return self._listeners.remove(listener)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def materialize(self, ids: Optional[Iterable[int]] = None) -> None:
        """Build the relation for an initial population. Fires no event."""
        if ids is None:
            ids = self.distance_query.relation.ids()
        ids = self._unique(ids)
        with self._lock:
            if self._population:
                raise RuntimeError(f"Store {self.name} is already materialized")
            candidates = sorted(ids)
            lists = {
                owner: scan_neighbors(self.distance_query, owner, candidates, self.k)
                for owner in candidates
            }
            self._population.update(ids)
            for owner, knn in lists.items():
                self._set_list(owner, knn)
            self._version += 1
            if self.check_invariants:
                self.validate()
            logger.debug("Materialized %s: %d objects, k=%d", self.name, len(ids), self.k)

    def insert(self, ids: Iterable[int]) -> Optional[ChangeEvent]:
        return self.commit(self.prepare_insert(ids))

    def delete(self, ids: Iterable[int]) -> Optional[ChangeEvent]:
        return self.commit(self.prepare_delete(ids))

    def prepare_insert(self, ids: Iterable[int]) -> PendingUpdate:
        """Compute the effect of inserting ids without applying it."""
        ids = self._unique(ids)
        with self._lock:
            for obj_id in ids:
                if obj_id in self._population:
                    raise ValueError(f"{obj_id} is already in store {self.name}")
                if obj_id not in self.distance_query.relation:
                    raise KeyError(obj_id)

            candidates = sorted(self._population | ids)
            lists: Dict[int, NeighborList] = {}
            for new_id in sorted(ids):
                lists[new_id] = scan_neighbors(
                    self.distance_query, new_id, candidates, self.k
                )

            updates = set()
            for owner in sorted(self._population):
                current = self._knn[owner]
                worst = current.worst() if len(current) >= self.k else None
                closer: List[NeighborEntry] = []
                for new_id in ids:
                    entry = NeighborEntry(
                        checked_distance(
                            self.distance_query.distance(owner, new_id), owner, new_id
                        ),
                        new_id,
                    )
                    if worst is None or entry < worst:
                        closer.append(entry)
                if closer:
                    lists[owner] = merge_neighbors(current, closer, self.k)
                    updates.add(owner)

            return PendingUpdate(
                store=self,
                version=self._version,
                kind=ChangeType.INSERT,
                objects=frozenset(ids),
                lists=lists,
                updates=frozenset(updates),
            )

    def prepare_delete(self, ids: Iterable[int]) -> PendingUpdate:
        """Compute the effect of deleting ids without applying it."""
        ids = self._unique(ids)
        with self._lock:
            for obj_id in ids:
                if obj_id not in self._population:
                    raise KeyError(obj_id)

            remaining_population = self._population - ids
            expected = self.expected_length(len(remaining_population))

            affected = set()
            for obj_id in ids:
                affected |= self._rknn.get(obj_id, set())
            affected -= ids

            lists: Dict[int, NeighborList] = {}
            for owner in sorted(affected):
                kept = [e for e in self._knn[owner] if e.id not in ids]
                missing = expected - len(kept)
                if missing > 0:
                    listed = {e.id for e in kept}
                    others = (
                        NeighborEntry(
                            checked_distance(
                                self.distance_query.distance(owner, c), owner, c
                            ),
                            c,
                        )
                        for c in sorted(remaining_population)
                        if c != owner and c not in listed
                    )
                    kept.extend(heapq.nsmallest(missing, others))
                lists[owner] = NeighborList(kept)

            return PendingUpdate(
                store=self,
                version=self._version,
                kind=ChangeType.DELETE,
                objects=frozenset(ids),
                lists=lists,
                updates=frozenset(affected),
            )

    def commit(self, pending: PendingUpdate) -> Optional[ChangeEvent]:
        """
        Apply a prepared update and notify listeners before returning.

        An update with no objects changes nothing and fires no event; None
        is returned then.
        """
        with self._lock:
            if pending.store is not self:
                raise ValueError(f"Pending update belongs to store {pending.store.name}")
            if pending.version != self._version:
                raise RuntimeError(
                    f"Store {self.name} changed since the update was prepared"
                )

            if not pending.objects:
                return None

            if pending.kind is ChangeType.INSERT:
                self._population |= pending.objects
                for owner, knn in pending.lists.items():
                    self._set_list(owner, knn)
                self._stats["inserts"] += len(pending.objects)
            else:
                for obj_id in pending.objects:
                    self._set_list(obj_id, NeighborList())
                    del self._knn[obj_id]
                for owner, knn in pending.lists.items():
                    self._set_list(owner, knn)
                for obj_id in pending.objects:
                    # Nobody may still list a deleted object
                    self._rknn.pop(obj_id, None)
                self._population -= pending.objects
                self._stats["deletes"] += len(pending.objects)

            self._version += 1
            self._stats["updated_lists"] += len(pending.updates)

            if self.check_invariants:
                touched = set(pending.lists) - set(
                    pending.objects if pending.kind is ChangeType.DELETE else ()
                )
                self.validate(touched)

            event = ChangeEvent.create(
                pending.kind, pending.objects, pending.updates, source=self
            )
            logger.debug("%s %s", self.name, event)
            self._listeners.dispatch(event)
            return event

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _set_list(self, owner: int, knn: NeighborList) -> None:
        old = self._knn.get(owner)
        old_ids = set(old.ids) if old is not None else set()
        new_ids = set(knn.ids)
        for gone in old_ids - new_ids:
            owners = self._rknn.get(gone)
            if owners is not None:
                owners.discard(owner)
                if not owners:
                    del self._rknn[gone]
        for added in new_ids - old_ids:
            self._rknn.setdefault(added, set()).add(owner)
        self._knn[owner] = knn

    @staticmethod
    def _unique(ids: Iterable[int]) -> FrozenSet[int]:
        ids = list(ids)
        unique = frozenset(ids)
        if len(unique) != len(ids):
            raise ValueError(f"Duplicate identifiers in {ids}")
        return unique

    def validate(self, owners: Optional[Iterable[int]] = None) -> None:
        """
        Check list and reverse-link invariants for owners (default: all).

        Raises:
            InvariantViolation: If any list is malformed or a reverse link is missing.
        """
        with self._lock:
            expected = self.expected_length()
            for owner in sorted(self._population if owners is None else owners):
                knn = self._knn[owner]
                knn.validate(owner, expected)
                for neighbor_id in knn.ids:
                    if neighbor_id not in self._population:
                        raise InvariantViolation(
                            f"Neighbor list of {owner} lists unknown object {neighbor_id}"
                        )
                    if owner not in self._rknn.get(neighbor_id, ()):
                        raise InvariantViolation(
                            f"Reverse link {neighbor_id} -> {owner} is missing"
                        )

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.copy()
            stats["population"] = len(self._population)
            stats["reverse_links"] = sum(len(v) for v in self._rknn.values())
            stats.update(self._listeners.stats())
            return stats

    def __repr__(self) -> str:
        return f"MaterializedKNNStore({self.name}, k={self.k}, n={len(self)})"
