"""
Population Database
===================

Owns a population of objects and the neighbor stores built over it, and
drives every insertion and deletion into all of those stores as one atomic
mutation.

Each mutation is prepared on every store first. A store's prepare step does
all the distance evaluations and changes nothing, so if any of them raises,
the mutation is abandoned and no store (and not the population) has
changed. Only then are the stores committed, each firing its change event.

Mutations are serialized by the database lock: event pairing downstream
assumes one mutation in flight per population.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .distance import CachedDistanceQuery, DistanceFunction, DistanceQuery
from .materialized import MaterializedKNNStore
from .util.object_store import ObjectStore

logger = logging.getLogger(__name__)


class Database:
    """
    A mutable population with its kNN indexes.

    Usage:
        db = Database()
        ids = db.insert([[0.0], [1.0], [2.0]])
        store = db.knn_index(EuclideanDistance(), k=2)
        db.insert([[1.5]])      # store updated, its listeners notified
        db.delete(ids[:1])
    """

    def __init__(self, objects: Optional[ObjectStore] = None, cache_size: int = 0):
        """
        Initialize the database.

        Args:
            objects: Object store to use, a new one by default
            cache_size: Size of the per-function distance cache; 0 disables caching
        """
        self.relation = objects if objects is not None else ObjectStore()
        self.cache_size = cache_size

        self._queries: Dict[DistanceFunction, DistanceQuery] = {}
        self._indexes: List[MaterializedKNNStore] = []
        self._lock = threading.RLock()

        self._stats = {
            "insert_calls": 0,
            "delete_calls": 0,
            "aborted": 0,
        }

    # ========================================================================
    # DISTANCES AND INDEXES
    # ========================================================================

    def distance_query(self, function: DistanceFunction) -> DistanceQuery:
        """The distance query for function, shared by all its users."""
        with self._lock:
            query = self._queries.get(function)
            if query is None:
                if self.cache_size > 0:
                    query = CachedDistanceQuery(self.relation, function, self.cache_size)
                else:
                    query = DistanceQuery(self.relation, function)
                self._queries[function] = query
            return query

    def add_index(self, store: MaterializedKNNStore) -> MaterializedKNNStore:
        """Register a store; it is materialized over the population if empty."""
        with self._lock:
            if store.distance_query.relation is not self.relation:
                raise ValueError("Store is built over a different population")
            if store in self._indexes:
                return store
            if len(store) == 0 and len(self.relation) > 0:
                store.materialize(self.relation.ids())
            elif set(store.population) != set(self.relation.ids()):
                raise ValueError("Store population does not match the database")
            self._indexes.append(store)
            logger.debug("Registered index %r", store)
            return store

    def knn_index(
        self,
        function: DistanceFunction,
        k: int,
        check_invariants: bool = False,
    ) -> MaterializedKNNStore:
        """Get the registered store for (function, k), creating it if needed."""
        with self._lock:
            for store in self._indexes:
                if store.distance_query.function == function and store.k == k:
                    return store
            store = MaterializedKNNStore(
                self.distance_query(function), k, check_invariants=check_invariants
            )
            return self.add_index(store)

    @property
    def indexes(self) -> Tuple[MaterializedKNNStore, ...]:
        with self._lock:
            return tuple(self._indexes)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def insert(self, objects: Iterable[Any]) -> List[int]:
        """Add objects to the population and every index. Returns their ids."""
        with self._lock:
            objects = list(objects)
            if not objects:
                return []
            self._stats["insert_calls"] += 1

            ids = self.relation.add(objects)
            try:
                pending = [store.prepare_insert(ids) for store in self._indexes]
            except Exception:
                self.relation.remove(ids)
                self._stats["aborted"] += 1
                logger.debug("Insert of %d object(s) aborted", len(ids))
                raise

            self._commit_all(pending)
            return ids

    def delete(self, ids: Iterable[int]) -> None:
        """Remove identifiers from every index and from the population."""
        with self._lock:
            ids = list(ids)
            if not ids:
                return
            if len(set(ids)) != len(ids):
                raise ValueError(f"Duplicate identifiers in {ids}")
            for obj_id in ids:
                if obj_id not in self.relation:
                    raise KeyError(obj_id)
            self._stats["delete_calls"] += 1

            try:
                pending = [store.prepare_delete(ids) for store in self._indexes]
            except Exception:
                self._stats["aborted"] += 1
                logger.debug("Delete of %d object(s) aborted", len(ids))
                raise

            try:
                self._commit_all(pending)
            finally:
                self.relation.remove(ids)
                for query in self._queries.values():
                    query.forget(ids)

    def _commit_all(self, pending) -> None:
        # Every store must take the mutation, even if a listener fails on an
        # earlier one; the first failure is re-raised afterwards
        first_error: Optional[BaseException] = None
        for update in pending:
            try:
                update.store.commit(update)
            except Exception as e:
                if first_error is None:
                    first_error = e
                else:
                    logger.debug("Further listener failure: %s", e)
        if first_error is not None:
            raise first_error

    # ========================================================================
    # INSPECTION
    # ========================================================================

    def ids(self) -> List[int]:
        return self.relation.ids()

    def get(self, obj_id: int) -> Any:
        return self.relation[obj_id]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.copy()
            stats["population"] = len(self.relation)
            stats["indexes"] = len(self._indexes)
            return stats

    def __len__(self) -> int:
        return len(self.relation)

    def __contains__(self, obj_id: int) -> bool:
        return obj_id in self.relation

    def __repr__(self) -> str:
        return f"Database(n={len(self)}, indexes={len(self._indexes)})"


def create_database(
    objects: Optional[Iterable[Any]] = None,
    cache_size: int = 0,
) -> Database:
    """
    Create a database, optionally with an initial population.

    Args:
        objects: Initial objects
        cache_size: Size of the per-function distance cache; 0 disables caching

    Returns:
        Configured Database instance
    """
    database = Database(cache_size=cache_size)
    if objects is not None:
        database.insert(objects)
    return database
