"""
liveknn utilities
=================

Classes:
- ObjectStore: Thread-safe identifier -> object map for a population
- MinMax: Running minimum/maximum over non-NaN values
"""

from .minmax import MinMax
from .object_store import ObjectStore

__all__ = [
    "ObjectStore",
    "MinMax",
]
