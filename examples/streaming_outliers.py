"""
Streaming Outliers Example - Keeping LOF Scores Live

This example shows how liveknn keeps Local Outlier Factor scores current
while points arrive and leave. Each insert or delete updates the neighbor
lists, recomputes only the scores the change can reach, and notifies
subscribers once.
"""

import logging

import numpy as np

from liveknn import EuclideanDistance, KNNBenchmark, ManhattanDistance, OnlineLOF, create_database

logging.basicConfig(level=logging.INFO)

rng = np.random.default_rng(0)

# Step 1: A population of 2-d points around the origin
database = create_database(rng.normal(0.0, 1.0, size=(200, 2)), cache_size=50000)

# Step 2: Start online LOF; scores are computed once, then kept up to date
lof = OnlineLOF(
    k=10,
    neighborhood_distance=EuclideanDistance(),
    reachability_distance=ManhattanDistance(),
)
result = lof.run(database)

print("Initial top outliers:")
for obj_id, score in result.top(3):
    print(f"  {obj_id}: {score:.3f}")


# Step 3: Watch the score table
def report(result):
    low, high = result.range()
    changed = lof.engine.last_update
    print(
        f"  -> {changed.kind.name}: {len(changed.lof_ids)} scores recomputed, "
        f"range [{low:.3f}, {high:.3f}]"
    )


subscription = result.subscribe(report)

# Step 4: Mutate the population
print("\nInserting a far away point...")
(far_id,) = database.insert([[8.0, 8.0]])
print(f"  score of the new point: {result.lof(far_id):.3f}")

print("\nInserting a small cluster...")
database.insert(rng.normal(0.5, 0.1, size=(5, 2)))

print("\nDeleting the far away point...")
database.delete([far_id])

subscription.unsubscribe()

# Step 5: Benchmark the materialized neighbor lists
reference = lof.engine.reference
print("\nkNN benchmark:")
print(f"  {KNNBenchmark(k=5, sampling=0.25, seed=1).run(reference)}")
print(f"  database stats: {database.get_stats()}")
