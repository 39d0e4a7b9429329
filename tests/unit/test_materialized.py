"""
Tests for MaterializedKNNStore: maintenance, reverse links, events and atomicity.
"""

from unittest.mock import Mock

import numpy as np
import pytest

from liveknn.distance import DistanceFunction, DistanceQuery, EuclideanDistance
from liveknn.events import ChangeType
from liveknn.linear_scan import LinearScanKNN
from liveknn.materialized import MaterializedKNNStore
from liveknn.neighbors import InvariantViolation, NeighborList


class FailingDistance(DistanceFunction):
    """Euclidean, except that any object with value 99 is rejected while armed."""

    name = "failing"

    def __init__(self, armed=True):
        self.armed = armed

    def distance(self, a, b):
        if self.armed and (a[0] == 99.0 or b[0] == 99.0):
            raise RuntimeError("oracle failure")
        return float(abs(a[0] - b[0]))


def build(objects, points, k, function=None, **kwargs):
    ids = objects.add(points)
    store = MaterializedKNNStore(
        DistanceQuery(objects, function or EuclideanDistance()), k, **kwargs
    )
    store.materialize(ids)
    return store, ids


def assert_matches_scan(store):
    scan = LinearScanKNN(store.distance_query, store.k)
    population = sorted(store.population)
    for owner in population:
        assert store.query(owner) == scan.query(owner)
    assert store.reverse_query(population) == scan.reverse_query(population)


class TestMaterialize:
    """Test suite for the initial build and queries."""

    def test_lists_match_scan(self, objects):
        store, _ = build(objects, [[0.0], [1.0], [2.0], [10.0]], k=2)
        assert store.query(0).ids == (1, 2)
        assert store.query(3).ids == (2, 1)
        assert_matches_scan(store)

    def test_prefix_query(self, objects):
        store, _ = build(objects, [[0.0], [1.0], [2.0], [10.0]], k=2)
        assert store.query(0, k=1).ids == (1,)

    def test_query_beyond_k_rejected(self, objects):
        store, _ = build(objects, [[0.0], [1.0], [2.0]], k=1)
        with pytest.raises(ValueError, match="between 1 and 1"):
            store.query(0, k=2)

    def test_unknown_owner(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        with pytest.raises(KeyError):
            store.query(5)

    def test_reverse_query_unknown_target_is_empty(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        assert store.reverse_query([42]) == {42: set()}

    def test_query_for_object_does_not_mutate(self, objects):
        store, _ = build(objects, [[0.0], [1.0], [2.0]], k=2)
        knn = store.query_for_object([1.9])
        assert knn.ids == (2, 1)
        assert len(store) == 3

    def test_short_lists_for_small_population(self, objects):
        """A population of n gives lists of min(k, n - 1) entries."""
        store, ids = build(objects, [[0.0], [1.0]], k=5)
        assert len(store.query(ids[0])) == 1
        single, _ = build(objects, [[7.0]], k=5)
        assert len(single.query(2)) == 0

    def test_materialize_twice_rejected(self, objects):
        store, ids = build(objects, [[0.0], [1.0]], k=1)
        with pytest.raises(RuntimeError, match="already materialized"):
            store.materialize(ids)

    def test_invalid_k(self, objects):
        with pytest.raises(ValueError):
            MaterializedKNNStore(DistanceQuery(objects, EuclideanDistance()), 0)


class TestInsert:
    """Test suite for insertion."""

    def test_scenario_insert_between(self, objects):
        """Inserting 1.5 updates the two owners it becomes nearest to."""
        store, _ = build(objects, [[0.0], [1.0], [2.0], [10.0]], k=1)
        (new_id,) = objects.add([[1.5]])
        event = store.insert([new_id])

        assert event.kind is ChangeType.INSERT
        assert event.objects == frozenset({new_id})
        assert event.updates == frozenset({1, 2})
        assert store.query(new_id).ids == (1,)
        assert store.query(0).ids == (1,)
        assert store.query(3).ids == (2,)
        assert_matches_scan(store)

    def test_batch_insert_sees_other_new_ids(self, objects):
        """New objects of one batch can be each other's neighbors."""
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        new_ids = objects.add([[50.0], [51.0]])
        store.insert(new_ids)
        assert store.query(new_ids[0]).ids == (new_ids[1],)
        assert store.query(new_ids[1]).ids == (new_ids[0],)
        assert_matches_scan(store)

    def test_short_lists_grow(self, objects):
        store, ids = build(objects, [[0.0]], k=2)
        new_ids = objects.add([[1.0], [3.0]])
        event = store.insert(new_ids)
        assert store.query(ids[0]).ids == tuple(new_ids)
        assert event.updates == frozenset(ids)

    def test_existing_id_rejected(self, objects):
        store, ids = build(objects, [[0.0], [1.0]], k=1)
        with pytest.raises(ValueError, match="already"):
            store.insert(ids[:1])

    def test_duplicate_ids_rejected(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        (new_id,) = objects.add([[3.0]])
        with pytest.raises(ValueError, match="Duplicate"):
            store.insert([new_id, new_id])

    def test_id_missing_from_relation(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        with pytest.raises(KeyError):
            store.insert([17])


class TestDelete:
    """Test suite for deletion."""

    def test_scenario_delete_unlisted(self, objects):
        """Deleting an object nobody lists updates nobody."""
        store, ids = build(objects, [[0.0], [1.0], [2.0], [10.0]], k=1)
        event = store.delete([ids[3]])
        objects.remove([ids[3]])
        assert event.kind is ChangeType.DELETE
        assert event.updates == frozenset()
        assert ids[3] not in store
        assert_matches_scan(store)

    def test_delete_refills_from_remainder(self, objects):
        store, ids = build(objects, [[0.0], [1.0], [2.0], [10.0]], k=2)
        event = store.delete([ids[1]])
        objects.remove([ids[1]])
        assert event.updates == frozenset({ids[0], ids[2], ids[3]})
        assert store.query(ids[0]).ids == (ids[2], ids[3])
        assert_matches_scan(store)

    def test_deleted_object_has_no_links(self, objects):
        store, ids = build(objects, [[0.0], [1.0], [2.0]], k=2)
        store.delete([ids[0]])
        assert store.reverse_query([ids[0]]) == {ids[0]: set()}
        with pytest.raises(KeyError):
            store.query(ids[0])

    def test_delete_down_to_one(self, objects):
        store, ids = build(objects, [[0.0], [1.0], [2.0]], k=2)
        store.delete(ids[1:])
        assert len(store.query(ids[0])) == 0

    def test_delete_unknown(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        with pytest.raises(KeyError):
            store.delete([9])


class TestListeners:
    """Test suite for event delivery."""

    def test_one_event_per_mutation(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        listener = Mock()
        store.register_listener(listener)
        new_ids = objects.add([[2.0], [3.0]])
        store.insert(new_ids)
        assert listener.call_count == 1
        event = listener.call_args.args[0]
        assert event.source is store

    def test_lists_visible_during_dispatch(self, objects):
        """Listeners read the already updated lists."""
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        seen = []
        store.register_listener(lambda e: seen.append(store.query(min(e.objects)).ids))
        (new_id,) = objects.add([[0.2]])
        store.insert([new_id])
        assert seen == [(0,)]

    def test_listener_failure_reaches_caller(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        store.register_listener(Mock(side_effect=RuntimeError("listener")))
        (new_id,) = objects.add([[2.0]])
        with pytest.raises(RuntimeError, match="listener"):
            store.insert([new_id])
        # The mutation itself was committed
        assert new_id in store

    def test_unregister(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        listener = Mock()
        store.register_listener(listener)
        assert store.unregister_listener(listener)
        (new_id,) = objects.add([[2.0]])
        store.insert([new_id])
        listener.assert_not_called()

    def test_empty_mutations_fire_no_event(self, objects):
        """Empty inserts and deletes change nothing and notify nobody."""
        store, ids = build(objects, [[0.0], [1.0]], k=1)
        listener = Mock()
        store.register_listener(listener)

        assert store.insert([]) is None
        assert store.insert([]) is None
        assert store.delete([]) is None

        listener.assert_not_called()
        assert store.population == frozenset(ids)
        (new_id,) = objects.add([[2.0]])
        store.insert([new_id])
        assert listener.call_count == 1


class TestTwoPhase:
    """Test suite for prepare/commit and atomicity."""

    def test_failing_oracle_on_insert_leaves_store_unchanged(self, objects):
        store, ids = build(objects, [[0.0], [1.0], [2.0]], k=2, function=FailingDistance())
        before = {owner: store.query(owner) for owner in ids}
        listener = Mock()
        store.register_listener(listener)

        (bad_id,) = objects.add([[99.0]])
        with pytest.raises(RuntimeError, match="oracle failure"):
            store.insert([bad_id])

        assert bad_id not in store
        assert {owner: store.query(owner) for owner in ids} == before
        listener.assert_not_called()

    def test_failing_oracle_on_delete_refill_leaves_store_unchanged(self, objects):
        """A refill scan that reaches the rejected object aborts the whole delete."""
        store, ids = build(
            objects, [[0.0], [1.0], [2.0], [99.0]], k=1, function=FailingDistance(armed=False)
        )
        lists = {owner: store.query(owner) for owner in ids}
        links = store.reverse_query(ids)
        listener = Mock()
        store.register_listener(listener)

        store.distance_query.function.armed = True
        # 0 loses its only neighbor 1 and has to scan 2 and 99 for a replacement
        with pytest.raises(RuntimeError, match="oracle failure"):
            store.delete([ids[1]])

        assert store.population == frozenset(ids)
        assert {owner: store.query(owner) for owner in ids} == lists
        assert store.reverse_query(ids) == links
        listener.assert_not_called()
        store.validate()

    def test_prepare_changes_nothing(self, objects):
        store, ids = build(objects, [[0.0], [1.0]], k=1)
        (new_id,) = objects.add([[0.5]])
        pending = store.prepare_insert([new_id])
        assert new_id not in store
        assert store.query(ids[0]).ids == (ids[1],)
        store.commit(pending)
        assert store.query(ids[0]).ids == (new_id,)

    def test_stale_pending_update_rejected(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        a, b = objects.add([[5.0], [6.0]])
        stale = store.prepare_insert([a])
        store.insert([b])
        with pytest.raises(RuntimeError, match="changed since"):
            store.commit(stale)

    def test_foreign_pending_update_rejected(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        other = MaterializedKNNStore(DistanceQuery(objects, EuclideanDistance()), 1)
        other.materialize([0, 1])
        (new_id,) = objects.add([[2.0]])
        with pytest.raises(ValueError, match="belongs to store"):
            store.commit(other.prepare_insert([new_id]))


class TestInvariants:
    """Test suite for invariant checking."""

    def test_random_mutations_keep_invariants(self, objects):
        """Lists and reverse links equal a fresh scan after every mutation."""
        rng = np.random.default_rng(7)
        store, _ = build(objects, rng.normal(size=(20, 2)), k=3, check_invariants=True)
        for step in range(15):
            if step % 3 == 2:
                victims = sorted(rng.choice(sorted(store.population), size=2, replace=False))
                store.delete([int(v) for v in victims])
                objects.remove([int(v) for v in victims])
            else:
                store.insert(objects.add(rng.normal(size=(2, 2))))
            assert_matches_scan(store)

    def test_validate_detects_corruption(self, objects):
        store, ids = build(objects, [[0.0], [1.0], [2.0]], k=1)
        store._knn[ids[0]] = NeighborList()
        with pytest.raises(InvariantViolation):
            store.validate()

    def test_stats(self, objects):
        store, _ = build(objects, [[0.0], [1.0]], k=1)
        store.insert(objects.add([[0.4]]))
        stats = store.get_stats()
        assert stats["inserts"] == 1
        assert stats["population"] == 3
        assert stats["reverse_links"] == 3
