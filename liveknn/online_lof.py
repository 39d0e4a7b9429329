"""
Online LOF
==========

Incremental Local Outlier Factor over a mutable population.

OnlineLOF.run() computes the scores once, then keeps them current: both
neighbor stores report every mutation, the synchronizer pairs the two
reports, and the engine recomputes only the ripple of the change.

Ripple per paired mutation:

1. lrd candidates = mutated + updated(reachability) + everyone listing one
   of those in the reachability store
2. recompute lrd for the candidates; the ones whose value changed are dirty
3. lof candidates = dirty + mutated + updated(reference) + everyone listing
   one of those in the reference store
4. recompute lof for the candidates, widen the score range, notify once

Deleted identifiers lose their lrd/lof before the ripple is computed, and
every candidate set is cut down to the live population.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set

from .database import Database
from .distance import DistanceFunction, EuclideanDistance
from .events import ChangeEvent, ChangeType
from .lof import LOFResult, compute_lofs, compute_lrds, run_lof, same_value
from .materialized import MaterializedKNNStore
from .sync import DualEventSynchronizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecomputeStats:
    """What one paired mutation recomputed."""

    kind: ChangeType
    objects: FrozenSet[int]
    lrd_ids: FrozenSet[int] = frozenset()
    dirty_ids: FrozenSet[int] = frozenset()
    lof_ids: FrozenSet[int] = frozenset()


class IncrementalLOFEngine:
    """
    Keeps a LOFResult current from paired change events.

    The engine is the pair callback of a DualEventSynchronizer; it never
    changes neighbor lists, it only reads them.
    """

    def __init__(
        self,
        result: LOFResult,
        reference: MaterializedKNNStore,
        reachability: MaterializedKNNStore,
    ):
        self.result = result
        self.reference = reference
        self.reachability = reachability
        self.last_update: Optional[RecomputeStats] = None
        self.update_count = 0

    def __call__(self, reference_event: ChangeEvent, reachability_event: ChangeEvent) -> None:
        self.apply(reference_event, reachability_event)

    def apply(self, reference_event: ChangeEvent, reachability_event: ChangeEvent) -> RecomputeStats:
        kind = reference_event.kind
        mutated = reference_event.objects

        live = self.reachability.population

        with self.result.updating() as result:
            if kind is ChangeType.DELETE:
                result.delete(mutated)

            # Densities
            lrd_ids = self._ripple(
                self.reachability, mutated | reachability_event.updates, live
            )
            old_lrds = result.lrd_view()
            new_lrds = compute_lrds(sorted(lrd_ids), self.reachability)
            dirty = {
                obj_id
                for obj_id, lrd in new_lrds.items()
                if obj_id not in old_lrds or not same_value(old_lrds[obj_id], lrd)
            }
            result.put_lrds({obj_id: new_lrds[obj_id] for obj_id in dirty})

            # Scores
            lof_ids = self._ripple(
                self.reference, dirty | mutated | reference_event.updates, live
            )
            result.put_lofs(
                compute_lofs(sorted(lof_ids), self.reference, result.lrd_view())
            )

        stats = RecomputeStats(
            kind=kind,
            objects=mutated,
            lrd_ids=frozenset(lrd_ids),
            dirty_ids=frozenset(dirty),
            lof_ids=frozenset(lof_ids),
        )
        self.last_update = stats
        self.update_count += 1
        logger.debug(
            "%s of %d object(s): %d lrd recomputed, %d changed, %d lof recomputed",
            kind.name,
            len(mutated),
            len(lrd_ids),
            len(dirty),
            len(lof_ids),
        )

        self.result.notify_changed()
        return stats

    @staticmethod
    def _ripple(store: MaterializedKNNStore, seeds: Iterable[int], live: FrozenSet[int]) -> Set[int]:
        seeds = set(seeds)
        ripple = set(seeds)
        for owners in store.reverse_query(seeds).values():
            ripple |= owners
        return ripple & live


class OnlineLOF:
    """
    Incremental LOF, supporting insertions and deletions.

    Neighborhoods exclude the object itself, so k counts other objects.

    Usage:
        db = create_database(points)
        lof = OnlineLOF(k=5)
        result = lof.run(db)
        db.insert(new_points)     # result updated before insert() returns
        result.top(10)
    """

    def __init__(
        self,
        k: int = 2,
        neighborhood_distance: Optional[DistanceFunction] = None,
        reachability_distance: Optional[DistanceFunction] = None,
        check_invariants: bool = False,
    ):
        """
        Initialize the algorithm.

        Args:
            k: Neighborhood size, must be greater than 1
            neighborhood_distance: Distance for the reference neighborhood (default Euclidean)
            reachability_distance: Distance for reachability (default: the neighborhood distance)
            check_invariants: Validate touched neighbor lists after every mutation
        """
        if k <= 1:
            raise ValueError(f"k must be greater than 1, got {k}")
        self.k = k
        self.neighborhood_distance = neighborhood_distance or EuclideanDistance()
        self.reachability_distance = reachability_distance or self.neighborhood_distance
        self.check_invariants = check_invariants

        self.engine: Optional[IncrementalLOFEngine] = None
        self.synchronizer: Optional[DualEventSynchronizer] = None

    def run(self, database: Database) -> LOFResult:
        """Compute LOF for the current population and keep it updated."""
        if self.synchronizer is not None:
            raise RuntimeError("OnlineLOF is already attached; create a new instance")

        logger.debug("Materializing reference neighborhood (%r)", self.neighborhood_distance)
        reference = database.knn_index(
            self.neighborhood_distance, self.k, check_invariants=self.check_invariants
        )
        logger.debug("Materializing reachability neighborhood (%r)", self.reachability_distance)
        reachability = database.knn_index(
            self.reachability_distance, self.k, check_invariants=self.check_invariants
        )

        result = run_lof(reference.population, reference, reachability, self.k)

        self.engine = IncrementalLOFEngine(result, reference, reachability)
        self.synchronizer = DualEventSynchronizer(reference, reachability, self.engine)
        self.synchronizer.attach()
        return result

    def detach(self) -> None:
        """Stop following mutations. The result keeps its last state."""
        if self.synchronizer is not None:
            self.synchronizer.detach()

    def settings(self) -> Dict[str, Any]:
        """The parameters in effect."""
        return {
            "algorithm": type(self).__name__,
            "k": self.k,
            "neighborhood_distance": repr(self.neighborhood_distance),
            "reachability_distance": repr(self.reachability_distance),
            "check_invariants": self.check_invariants,
        }

    def __repr__(self) -> str:
        return f"OnlineLOF(k={self.k})"


def create_online_lof(
    k: int = 2,
    neighborhood_distance: Optional[DistanceFunction] = None,
    reachability_distance: Optional[DistanceFunction] = None,
    check_invariants: bool = False,
) -> OnlineLOF:
    """
    Create an online LOF with specified settings.

    Args:
        k: Neighborhood size, must be greater than 1
        neighborhood_distance: Distance for the reference neighborhood
        reachability_distance: Distance for reachability, defaults to the neighborhood one
        check_invariants: Validate touched neighbor lists after every mutation

    Returns:
        Configured OnlineLOF instance
    """
    return OnlineLOF(
        k=k,
        neighborhood_distance=neighborhood_distance,
        reachability_distance=reachability_distance,
        check_invariants=check_invariants,
    )
