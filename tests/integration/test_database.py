"""
Integration tests for Database: indexes, atomic mutations and cache invalidation.
"""

from unittest.mock import Mock

import pytest

from liveknn import (
    CachedDistanceQuery,
    Database,
    DistanceFunction,
    EuclideanDistance,
    ManhattanDistance,
    MaterializedKNNStore,
    ObjectStore,
    create_database,
)
from liveknn.events import ChangeType


class RejectingDistance(DistanceFunction):
    """Euclidean on 1-d points, failing for any object with value 99 while armed."""

    name = "rejecting"

    def __init__(self, armed=True):
        self.armed = armed

    def distance(self, a, b):
        if self.armed and (a[0] == 99.0 or b[0] == 99.0):
            raise RuntimeError("oracle failure")
        return float(abs(a[0] - b[0]))


class TestIndexes:
    """Test suite for index registration."""

    def test_knn_index_materializes_population(self, database):
        store = database.knn_index(EuclideanDistance(), 2)
        assert store.population == frozenset(database.ids())
        assert store.query(0).ids == (1, 2)

    def test_knn_index_is_shared(self, database):
        a = database.knn_index(EuclideanDistance(), 2)
        b = database.knn_index(EuclideanDistance(), 2)
        c = database.knn_index(EuclideanDistance(), 3)
        assert a is b
        assert a is not c
        assert len(database.indexes) == 2

    def test_distance_query_shared_per_function(self, database):
        assert database.distance_query(EuclideanDistance()) is database.distance_query(
            EuclideanDistance()
        )

    def test_foreign_store_rejected(self, database):
        store = MaterializedKNNStore(
            Database().distance_query(EuclideanDistance()), 2
        )
        with pytest.raises(ValueError, match="different population"):
            database.add_index(store)

    def test_mismatched_population_rejected(self, database):
        store = MaterializedKNNStore(database.distance_query(EuclideanDistance()), 1)
        store.materialize([0, 1])
        with pytest.raises(ValueError, match="does not match"):
            database.add_index(store)


class TestMutations:
    """Test suite for insert and delete through the database."""

    def test_insert_updates_every_index(self, database):
        euclid = database.knn_index(EuclideanDistance(), 1)
        manhattan = database.knn_index(ManhattanDistance(), 1)
        (new_id,) = database.insert([[9.0]])
        assert euclid.query(new_id).ids == (3,)
        assert manhattan.query(3).ids == (new_id,)
        assert new_id in database

    def test_insert_empty_is_noop(self, database):
        assert database.insert([]) == []
        assert database.get_stats()["insert_calls"] == 0

    def test_delete_removes_from_population_and_indexes(self, database):
        store = database.knn_index(EuclideanDistance(), 2)
        database.delete([1])
        assert 1 not in database
        assert 1 not in store
        assert store.query(0).ids == (2, 3)

    def test_delete_validates_ids(self, database):
        with pytest.raises(KeyError):
            database.delete([42])
        with pytest.raises(ValueError, match="Duplicate"):
            database.delete([1, 1])
        assert len(database) == 4

    def test_one_event_per_index_per_mutation(self, database):
        store = database.knn_index(EuclideanDistance(), 2)
        listener = Mock()
        store.register_listener(listener)
        database.insert([[3.0], [4.0]])
        database.delete([0])
        kinds = [call.args[0].kind for call in listener.call_args_list]
        assert kinds == [ChangeType.INSERT, ChangeType.DELETE]

    def test_failing_oracle_aborts_insert_everywhere(self):
        database = create_database([[0.0], [1.0], [2.0]])
        good = database.knn_index(EuclideanDistance(), 1)
        bad = database.knn_index(RejectingDistance(), 1)
        listener = Mock()
        good.register_listener(listener)
        bad.register_listener(listener)

        with pytest.raises(RuntimeError, match="oracle failure"):
            database.insert([[99.0]])

        assert len(database) == 3
        assert len(good) == 3
        assert len(bad) == 3
        listener.assert_not_called()
        assert database.get_stats()["aborted"] == 1

    def test_failing_oracle_aborts_delete_everywhere(self):
        """A failing refill scan in one index leaves every index and the population intact."""
        database = create_database([[0.0], [1.0], [2.0], [99.0]])
        good = database.knn_index(EuclideanDistance(), 1)
        bad = database.knn_index(RejectingDistance(armed=False), 1)
        ids = database.ids()
        lists = {store: {i: store.query(i) for i in ids} for store in (good, bad)}
        links = {store: store.reverse_query(ids) for store in (good, bad)}
        listener = Mock()
        good.register_listener(listener)
        bad.register_listener(listener)

        bad.distance_query.function.armed = True
        with pytest.raises(RuntimeError, match="oracle failure"):
            database.delete([1])

        assert database.ids() == ids
        for store in (good, bad):
            assert store.population == frozenset(ids)
            assert {i: store.query(i) for i in ids} == lists[store]
            assert store.reverse_query(ids) == links[store]
        listener.assert_not_called()
        assert database.get_stats()["aborted"] == 1

    def test_listener_failure_still_commits_every_index(self, database):
        first = database.knn_index(EuclideanDistance(), 1)
        second = database.knn_index(ManhattanDistance(), 1)
        first.register_listener(Mock(side_effect=RuntimeError("listener")))
        with pytest.raises(RuntimeError, match="listener"):
            database.insert([[5.0]])
        assert len(first) == len(second) == 5


class TestCaching:
    """Test suite for the cached distance query."""

    def test_cache_enabled_by_size(self):
        database = Database(cache_size=100)
        assert isinstance(database.distance_query(EuclideanDistance()), CachedDistanceQuery)

    def test_delete_forgets_cached_pairs(self):
        database = create_database([[0.0], [1.0], [2.0]], cache_size=100)
        database.knn_index(EuclideanDistance(), 1)
        query = database.distance_query(EuclideanDistance())
        database.delete([0])
        assert query.get_stats()["forgotten"] > 0
        assert all(0 not in key for key in query._cache.keys())

    def test_custom_object_store(self):
        objects = ObjectStore()
        database = Database(objects=objects)
        database.insert([[1.0]])
        assert database.relation is objects
        assert len(objects) == 1
