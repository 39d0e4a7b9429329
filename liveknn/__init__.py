"""
liveknn - Live kNN

Materialized k-nearest-neighbor stores that stay exact under insertions and
deletions, and an online Local Outlier Factor that recomputes only the part
of the population a mutation can affect.
"""

__version__ = "0.1.0"

from .benchmark import BenchmarkResult, KNNBenchmark
from .database import Database, create_database
from .distance import (
    CachedDistanceQuery,
    CosineDistance,
    DistanceFunction,
    DistanceQuery,
    EuclideanDistance,
    LngLatDistance,
    ManhattanDistance,
    SquaredEuclideanDistance,
)
from .events import ChangeEvent, ChangeType, ListenerSet, Subscription
from .linear_scan import LinearScanKNN
from .lof import LOFResult, run_lof
from .materialized import MaterializedKNNStore, PendingUpdate
from .neighbors import InvariantViolation, NeighborEntry, NeighborList
from .online_lof import IncrementalLOFEngine, OnlineLOF, create_online_lof
from .sync import DualEventSynchronizer, ProtocolViolation, SyncState
from .util import MinMax, ObjectStore

__all__ = [
    # Population
    "Database",
    "ObjectStore",
    # Distances
    "DistanceFunction",
    "EuclideanDistance",
    "SquaredEuclideanDistance",
    "ManhattanDistance",
    "CosineDistance",
    "LngLatDistance",
    "DistanceQuery",
    "CachedDistanceQuery",
    # Neighbors
    "NeighborEntry",
    "NeighborList",
    "MaterializedKNNStore",
    "PendingUpdate",
    "LinearScanKNN",
    # Events
    "ChangeType",
    "ChangeEvent",
    "ListenerSet",
    "Subscription",
    "DualEventSynchronizer",
    "SyncState",
    # Outlier scores
    "OnlineLOF",
    "IncrementalLOFEngine",
    "LOFResult",
    "MinMax",
    "run_lof",
    # Benchmark
    "KNNBenchmark",
    "BenchmarkResult",
    # Exceptions
    "InvariantViolation",
    "ProtocolViolation",
    # Factory functions
    "create_database",
    "create_online_lof",
]
