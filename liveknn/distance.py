"""
Distance Oracles
================

Distance functions on raw objects, and distance queries that bind a function
to a population so distances can be asked for by identifier.

A distance query is the only way the neighbor stores reach the data:

    query = DistanceQuery(objects, EuclideanDistance())
    query.distance(3, 7)                  # two identifiers
    query.distance_to_object(vector, 7)   # a query object and an identifier

Queries are always evaluated owner-first (the object whose neighbors are
being computed is the first argument), so a neighbor list built
incrementally and one built from scratch see bit-identical distances even
for functions that are not exactly symmetric in floating point.
"""

import math
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable

import numpy as np
from cachetools import LRUCache

from .util.object_store import ObjectStore


# ============================================================================
# DISTANCE FUNCTIONS
# ============================================================================


class DistanceFunction(ABC):
    """
    Pure, stateless, deterministic distance on two objects.

    Not required to be a metric; is_metric only documents whether it is.
    """

    name: str = "distance"
    is_metric: bool = False

    @abstractmethod
    def distance(self, a: Any, b: Any) -> float:
        """Return the distance between two objects."""
        pass

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __hash__(self) -> int:
        return hash(type(self))

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class EuclideanDistance(DistanceFunction):
    """L2 distance on numeric vectors."""

    name = "euclidean"
    is_metric = True

    def distance(self, a: Any, b: Any) -> float:
        diff = np.asarray(a, dtype=float) - np.asarray(b, dtype=float)
        return float(np.sqrt(np.dot(diff, diff)))


class SquaredEuclideanDistance(DistanceFunction):
    """Squared L2 distance. Same neighbor order as Euclidean, not a metric."""

    name = "squared_euclidean"

    def distance(self, a: Any, b: Any) -> float:
        diff = np.asarray(a, dtype=float) - np.asarray(b, dtype=float)
        return float(np.dot(diff, diff))


class ManhattanDistance(DistanceFunction):
    """L1 distance on numeric vectors."""

    name = "manhattan"
    is_metric = True

    def distance(self, a: Any, b: Any) -> float:
        diff = np.asarray(a, dtype=float) - np.asarray(b, dtype=float)
        return float(np.sum(np.abs(diff)))


class CosineDistance(DistanceFunction):
    """
    1 - cosine similarity.

    Two zero vectors are at distance 0; a zero vector and a non-zero vector
    are at distance 1.
    """

    name = "cosine"

    def distance(self, a: Any, b: Any) -> float:
        a = np.asarray(a, dtype=float)
        b = np.asarray(b, dtype=float)
        norm_a = float(np.sqrt(np.dot(a, a)))
        norm_b = float(np.sqrt(np.dot(b, b)))
        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0 if norm_a == norm_b else 1.0
        similarity = float(np.dot(a, b)) / (norm_a * norm_b)
        # Rounding can push the similarity slightly outside [-1, 1]
        similarity = min(1.0, max(-1.0, similarity))
        return 1.0 - similarity


class LngLatDistance(DistanceFunction):
    """
    Great-circle distance for (longitude, latitude) pairs in degrees.

    Uses the Vincenty formula on a sphere, which stays accurate for both
    antipodal and very close points. The result is in the unit of radius
    (metres by default).
    """

    name = "lnglat"
    is_metric = True

    def __init__(self, radius: float = 6371009.0):
        if radius <= 0:
            raise ValueError(f"radius must be positive, got {radius}")
        self.radius = float(radius)

    def distance(self, a: Any, b: Any) -> float:
        lng1, lat1 = (math.radians(float(v)) for v in a[:2])
        lng2, lat2 = (math.radians(float(v)) for v in b[:2])
        dlng = lng2 - lng1

        slat1, clat1 = math.sin(lat1), math.cos(lat1)
        slat2, clat2 = math.sin(lat2), math.cos(lat2)
        sdlng, cdlng = math.sin(dlng), math.cos(dlng)

        num = math.hypot(clat2 * sdlng, clat1 * slat2 - slat1 * clat2 * cdlng)
        den = slat1 * slat2 + clat1 * clat2 * cdlng
        return self.radius * math.atan2(num, den)

    def __repr__(self) -> str:
        return f"LngLatDistance(radius={self.radius})"


# ============================================================================
# DISTANCE QUERIES
# ============================================================================


class DistanceQuery:
    """Distance function bound to a population, addressed by identifier."""

    def __init__(self, relation: ObjectStore, function: DistanceFunction):
        self.relation = relation
        self.function = function

    def distance(self, a_id: int, b_id: int) -> float:
        """Distance from object a_id to object b_id."""
        return self.function.distance(self.relation[a_id], self.relation[b_id])

    def distance_to_object(self, obj: Any, b_id: int) -> float:
        """Distance from an ad hoc object to object b_id."""
        return self.function.distance(obj, self.relation[b_id])

    def forget(self, ids: Iterable[int]) -> None:
        """Drop any state held for the given identifiers. Nothing to drop here."""
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.function!r})"


class CachedDistanceQuery(DistanceQuery):
    """
    Distance query that memoises identifier pairs in an LRU cache.

    The cache holds (a, b) pairs as ordered keys. Identifiers are never
    reused, but the population database still calls forget() after a
    deletion so that the cache does not keep dead pairs alive.
    """

    def __init__(
        self,
        relation: ObjectStore,
        function: DistanceFunction,
        cache_size: int = 100000,
    ):
        super().__init__(relation, function)
        self._cache: LRUCache = LRUCache(maxsize=cache_size)
        self._lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "forgotten": 0}

    def distance(self, a_id: int, b_id: int) -> float:
        key = (a_id, b_id)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._stats["hits"] += 1
                return cached
        value = super().distance(a_id, b_id)
        with self._lock:
            self._stats["misses"] += 1
            self._cache[key] = value
        return value

    def forget(self, ids: Iterable[int]) -> None:
        ids = set(ids)
        if not ids:
            return
        with self._lock:
            stale = [key for key in self._cache.keys() if key[0] in ids or key[1] in ids]
            for key in stale:
                self._cache.pop(key, None)
            self._stats["forgotten"] += len(stale)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.copy()
            stats["cache_size"] = len(self._cache)
            total = stats["hits"] + stats["misses"]
            stats["hit_rate"] = stats["hits"] / total if total > 0 else 0
            return stats
