"""
kNN Query Benchmark
===================

Runs a sample of kNN queries against any neighbor supplier and summarizes
the answers, so that two suppliers (or two runs) can be compared by their
checksum.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BenchmarkResult:
    """Summary of one benchmark run."""

    count: int
    checksum: int
    mean_size: float
    std_size: float
    mean_k_distance: float
    std_k_distance: float
    elapsed: float = 0.0

    def __str__(self) -> str:
        return (
            f"{self.count} queries, checksum {self.checksum}, "
            f"size {self.mean_size:.2f} +- {self.std_size:.2f}, "
            f"k-distance {self.mean_k_distance:.4g} +- {self.std_k_distance:.4g}"
        )


def mix_checksum(checksum: int, ids: Sequence[int]) -> int:
    """Fold one result into a 32-bit checksum."""
    return (checksum * 31 + sum(ids)) & 0xFFFFFFFF


def sample_size(total: int, sampling: float) -> int:
    """Number of queries to run: all, a share, or an absolute count."""
    if sampling <= 0:
        return total
    if sampling <= 1:
        return int(round(total * sampling))
    return min(total, int(sampling))


class KNNBenchmark:
    """
    Sampled kNN query benchmark.

    Usage:
        bench = KNNBenchmark(k=5, sampling=0.1, seed=0)
        result = bench.run(store)                  # queries by identifier
        result = bench.run(store, queries=points)  # queries by object
    """

    def __init__(self, k: Optional[int] = None, sampling: float = 0.0, seed: Optional[int] = None):
        """
        Initialize the benchmark.

        Args:
            k: Neighbors per query, the supplier's own k by default
            sampling: <= 0 for all, (0, 1] for a share, > 1 for a count
            seed: Random seed for the sample
        """
        if k is not None and k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        self.k = k
        self.sampling = sampling
        self.seed = seed

    def _sample(self, total: int) -> List[int]:
        n = sample_size(total, self.sampling)
        if n >= total:
            return list(range(total))
        rng = np.random.default_rng(self.seed)
        return sorted(int(i) for i in rng.choice(total, size=n, replace=False))

    def run(self, supplier: Any, queries: Optional[Sequence[Any]] = None) -> BenchmarkResult:
        """Run the sampled queries and summarize their neighbor lists."""
        if queries is None:
            if hasattr(supplier, "population"):
                population = sorted(supplier.population)
            else:
                population = supplier.relation.ids()
            chosen = [population[i] for i in self._sample(len(population))]
            ask = lambda owner: supplier.query(owner, self.k)
        else:
            chosen = [queries[i] for i in self._sample(len(queries))]
            ask = lambda obj: supplier.query_for_object(obj, self.k)

        checksum = 0
        sizes = []
        k_distances = []
        start = time.perf_counter()
        for query in chosen:
            knn = ask(query)
            checksum = mix_checksum(checksum, knn.ids)
            sizes.append(len(knn))
            if len(knn) > 0:
                k_distances.append(knn.k_distance)
        elapsed = time.perf_counter() - start

        sizes = np.asarray(sizes, dtype=float)
        k_distances = np.asarray(k_distances, dtype=float)
        result = BenchmarkResult(
            count=len(chosen),
            checksum=checksum,
            mean_size=float(sizes.mean()) if sizes.size else float("nan"),
            std_size=float(sizes.std()) if sizes.size else float("nan"),
            mean_k_distance=float(k_distances.mean()) if k_distances.size else float("nan"),
            std_k_distance=float(k_distances.std()) if k_distances.size else float("nan"),
            elapsed=elapsed,
        )
        logger.info("kNN benchmark: %s (%.3fs)", result, elapsed)
        return result
