"""
liveknn Maintenance Benchmarks

Compares keeping neighbor lists and LOF scores current incrementally against
the cost of a single from-scratch recomputation.
"""

import argparse
import time
from dataclasses import dataclass
from typing import Callable, List

import numpy as np
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from liveknn import (
    EuclideanDistance,
    KNNBenchmark,
    LinearScanKNN,
    OnlineLOF,
    create_database,
    run_lof,
)

# =============================================================================
# Benchmark Configuration
# =============================================================================

DEFAULT_POPULATION = 500
DEFAULT_MUTATIONS = 50
DEFAULT_K = 10
DIMENSIONS = 4


@dataclass
class BenchmarkRun:
    """Timing of one benchmark."""

    operation: str
    count: int
    total_time: float

    @property
    def per_operation_ms(self) -> float:
        return 1000.0 * self.total_time / self.count if self.count else 0.0


def timed(operation: str, count: int, func: Callable[[], None]) -> BenchmarkRun:
    start = time.perf_counter()
    func()
    return BenchmarkRun(operation, count, time.perf_counter() - start)


class MaintenanceBenchmark:
    """Incremental maintenance against from-scratch recomputation."""

    def __init__(self, population: int, mutations: int, k: int, seed: int):
        self.population = population
        self.mutations = mutations
        self.k = k
        self.rng = np.random.default_rng(seed)
        self.console = Console()
        self.results: List[BenchmarkRun] = []

    def run(self):
        start_time = time.time()
        self._display_header()

        database = create_database(
            self.rng.normal(size=(self.population, DIMENSIONS)), cache_size=0
        )

        self.console.print("[yellow]Materializing and scoring...[/yellow]")
        lof = OnlineLOF(k=self.k)
        self.results.append(
            timed("Initial LOF", self.population, lambda: lof.run(database))
        )

        self.console.print("[yellow]Running incremental inserts...[/yellow]")
        points = self.rng.normal(size=(self.mutations, DIMENSIONS))
        self.results.append(
            timed(
                "Incremental insert",
                self.mutations,
                lambda: [database.insert([p]) for p in points],
            )
        )

        self.console.print("[yellow]Running incremental deletes...[/yellow]")
        victims = self.rng.choice(database.ids(), size=self.mutations, replace=False)
        self.results.append(
            timed(
                "Incremental delete",
                self.mutations,
                lambda: [database.delete([int(v)]) for v in victims],
            )
        )

        self.console.print("[yellow]Running from-scratch recomputation...[/yellow]")
        scan = LinearScanKNN(database.distance_query(EuclideanDistance()), self.k)
        self.results.append(
            timed(
                "Batch LOF (linear scan)",
                1,
                lambda: run_lof(database.ids(), scan, scan, self.k),
            )
        )

        self._display_results()
        self._display_queries(lof, scan)

        elapsed = time.time() - start_time
        self.console.print(
            f"\n[dim]Benchmark suite completed in {elapsed:.2f} seconds[/dim]"
        )

    def _display_header(self):
        header = Panel(
            f"Population {self.population:,}, {self.mutations} mutations, k={self.k}",
            title="liveknn Maintenance Benchmarks",
            border_style="blue",
        )
        self.console.print(header)
        self.console.print()

    def _display_results(self):
        self.console.print()
        table = Table(title="Timing Results")
        table.add_column("Benchmark", style="cyan")
        table.add_column("Operations", style="yellow", justify="right")
        table.add_column("ms/op", style="green", justify="right")
        table.add_column("Time (sec)", style="blue", justify="right")
        for result in self.results:
            table.add_row(
                result.operation,
                f"{result.count:,}",
                f"{result.per_operation_ms:.3f}",
                f"{result.total_time:.4f}",
            )
        self.console.print(table)

    def _display_queries(self, lof, scan):
        self.console.print()
        bench = KNNBenchmark(sampling=0.1, seed=0)
        materialized = bench.run(lof.engine.reference)
        scanned = bench.run(scan)

        table = Table(title="kNN Query Results")
        table.add_column("Supplier", style="cyan")
        table.add_column("Queries", style="yellow", justify="right")
        table.add_column("Checksum", style="green", justify="right")
        table.add_column("Mean k-distance", style="blue", justify="right")
        table.add_column("Time (sec)", style="blue", justify="right")
        for name, result in (("Materialized", materialized), ("Linear scan", scanned)):
            table.add_row(
                name,
                f"{result.count:,}",
                str(result.checksum),
                f"{result.mean_k_distance:.4f}",
                f"{result.elapsed:.4f}",
            )
        self.console.print(table)
        if materialized.checksum != scanned.checksum:
            self.console.print("[red]Checksums differ between suppliers[/red]")


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--population", type=int, default=DEFAULT_POPULATION)
    parser.add_argument("--mutations", type=int, default=DEFAULT_MUTATIONS)
    parser.add_argument("-k", type=int, default=DEFAULT_K)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()
    MaintenanceBenchmark(args.population, args.mutations, args.k, args.seed).run()


if __name__ == "__main__":
    main()
