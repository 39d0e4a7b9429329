"""
Local Outlier Factor
====================

Density and score formulas, the score table they are written into, and the
static (batch) computation over a whole population.

    reach_dist(p, o) = max(k_distance(o), d(p, o))          reachability store
    lrd(p)           = |N(p)| / sum(reach_dist(p, o))         reachability store
    lof(p)           = sum(lrd(o)) / (|N(p)| * lrd(p))        reference store

Undefined cases:
- empty neighborhood (population of one): lrd and lof are NaN
- all reachability distances zero (duplicates): lrd is inf, lof is 1.0

Each formula reads only the neighbor lists, in list order, so recomputing an
unchanged neighborhood reproduces the stored value bit for bit.
"""

import logging
import math
import threading
from contextlib import contextmanager
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .events import Subscription
from .util.minmax import MinMax

logger = logging.getLogger(__name__)


# ============================================================================
# FORMULAS
# ============================================================================


def local_reachability_density(owner: int, reachability: Any) -> float:
    """lrd of owner from the reachability kNN supplier."""
    knn = reachability.query(owner)
    if len(knn) == 0:
        return math.nan
    total = 0.0
    for entry in knn:
        k_distance = reachability.query(entry.id).k_distance
        total += max(k_distance, entry.distance)
    if total > 0:
        return len(knn) / total
    return math.inf


def local_outlier_factor(owner: int, reference: Any, lrds: Mapping[int, float]) -> float:
    """lof of owner from the reference kNN supplier and current densities."""
    lrd = lrds[owner]
    if math.isnan(lrd):
        return math.nan
    knn = reference.query(owner)
    if len(knn) == 0:
        return math.nan
    if math.isinf(lrd) or lrd == 0.0:
        return 1.0
    total = 0.0
    for neighbor_id in knn.ids:
        total += lrds[neighbor_id]
    return total / (len(knn) * lrd)


def same_value(a: float, b: float) -> bool:
    """Equality that treats NaN as equal to NaN."""
    return a == b or (math.isnan(a) and math.isnan(b))


# ============================================================================
# SCORE TABLE
# ============================================================================


class LOFResult:
    """
    Per-identifier densities and scores, with a running score range.

    The range only widens: deleting the object that held the extreme value
    does not shrink it.

    Usage:
        result.get(obj_id)     # (lrd, lof)
        result.range()         # (min, max)
        sub = result.subscribe(lambda result: print("changed"))
        with result.updating():   # readers wait for the whole update
            ...
        sub.unsubscribe()
    """

    def __init__(self, k: int):
        self.k = k
        self._lrds: Dict[int, float] = {}
        self._lofs: Dict[int, float] = {}
        self._minmax = MinMax()

        self._subscriptions: Dict[int, Subscription] = {}
        self._next_sub_id = 0
        self._lock = threading.RLock()
        self._change_count = 0

    # ------------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------------

    def get(self, obj_id: int) -> Tuple[float, float]:
        """(lrd, lof) of an identifier. Raises KeyError if unknown."""
        with self._lock:
            return self._lrds[obj_id], self._lofs[obj_id]

    def lrd(self, obj_id: int) -> float:
        with self._lock:
            return self._lrds[obj_id]

    def lof(self, obj_id: int) -> float:
        with self._lock:
            return self._lofs[obj_id]

    def range(self) -> Tuple[float, float]:
        with self._lock:
            return self._minmax.as_tuple()

    def scores(self) -> Dict[int, float]:
        with self._lock:
            return dict(self._lofs)

    def densities(self) -> Dict[int, float]:
        with self._lock:
            return dict(self._lrds)

    def lrd_view(self) -> Mapping[int, float]:
        """Read-only live view of the densities, for the engine."""
        return MappingProxyType(self._lrds)

    def top(self, n: int) -> List[Tuple[int, float]]:
        """The n highest scores, ties by identifier. NaN scores are skipped."""
        with self._lock:
            valid = [(i, s) for i, s in self._lofs.items() if not math.isnan(s)]
        valid.sort(key=lambda item: (-item[1], item[0]))
        return valid[:n]

    @property
    def change_count(self) -> int:
        return self._change_count

    def __contains__(self, obj_id: int) -> bool:
        with self._lock:
            return obj_id in self._lofs

    def __len__(self) -> int:
        with self._lock:
            return len(self._lofs)

    # ------------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------------

    def subscribe(self, callback: Callable[["LOFResult"], None]) -> Subscription:
        """Call callback with this result after every completed update."""
        with self._lock:
            sub_id = self._next_sub_id
            self._next_sub_id += 1
            subscription = Subscription(sub_id, callback, self)
            self._subscriptions[sub_id] = subscription
            return subscription

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def notify_changed(self) -> None:
        with self._lock:
            self._change_count += 1
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.notify(self)

    # ------------------------------------------------------------------------
    # Writing (engine side)
    # ------------------------------------------------------------------------

    @contextmanager
    def updating(self) -> Iterator["LOFResult"]:
        """
        Hold the table for a multi-step update.

        Readers on other threads wait until the block ends, so they never see
        new densities next to old scores. Notify subscribers after the block.
        """
        with self._lock:
            yield self

    def put_lrds(self, lrds: Mapping[int, float]) -> None:
        with self._lock:
            self._lrds.update(lrds)

    def put_lofs(self, lofs: Mapping[int, float]) -> None:
        """Store scores and widen the range to cover them."""
        with self._lock:
            self._lofs.update(lofs)
            self._minmax.put_all(lofs.values())

    def delete(self, ids: Iterable[int]) -> None:
        with self._lock:
            for obj_id in ids:
                self._lrds.pop(obj_id, None)
                self._lofs.pop(obj_id, None)

    def __repr__(self) -> str:
        low, high = self.range()
        return f"LOFResult(k={self.k}, n={len(self)}, range=[{low:g}, {high:g}])"


# ============================================================================
# BATCH COMPUTATION
# ============================================================================


def compute_lrds(ids: Iterable[int], reachability: Any) -> Dict[int, float]:
    return {obj_id: local_reachability_density(obj_id, reachability) for obj_id in ids}


def compute_lofs(
    ids: Iterable[int], reference: Any, lrds: Mapping[int, float]
) -> Dict[int, float]:
    return {obj_id: local_outlier_factor(obj_id, reference, lrds) for obj_id in ids}


def run_lof(
    ids: Iterable[int],
    reference: Any,
    reachability: Any,
    k: int,
    result: Optional[LOFResult] = None,
) -> LOFResult:
    """
    Compute lrd and lof for every identifier from scratch.

    Args:
        ids: The whole population
        reference: kNN supplier for the neighborhood distance
        reachability: kNN supplier for the reachability distance
        k: Neighborhood size the suppliers were built with
        result: Table to fill, a new one by default
    """
    ids = sorted(ids)
    if result is None:
        result = LOFResult(k)
    lrds = compute_lrds(ids, reachability)
    result.put_lrds(lrds)
    result.put_lofs(compute_lofs(ids, reference, lrds))
    logger.debug("Computed LOF for %d objects, range %s", len(ids), result.range())
    return result
