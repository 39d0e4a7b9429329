"""
Shared pytest fixtures and configuration for liveknn tests.
"""

import numpy as np
import pytest

from liveknn import Database, ObjectStore


@pytest.fixture
def line_points():
    """Points on a line with one far outlier."""
    return [[0.0], [1.0], [2.0], [10.0]]


@pytest.fixture
def database(line_points):
    """A database holding the line points, ids 0..3."""
    db = Database()
    db.insert(line_points)
    return db


@pytest.fixture
def objects():
    """An empty object store."""
    return ObjectStore()


@pytest.fixture
def random_points():
    """A reproducible 2-d cloud with a few outliers."""
    rng = np.random.default_rng(42)
    cloud = rng.normal(0.0, 1.0, size=(40, 2))
    outliers = rng.uniform(6.0, 9.0, size=(4, 2))
    return np.vstack([cloud, outliers])
