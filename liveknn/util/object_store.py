"""
Object Store Implementation
===========================

Thread-safe identifier -> object map backing a point population.
Identifiers are allocated from a monotonically increasing counter, so a
deleted identifier never comes back while the store is alive.
"""

import threading
from typing import Any, Dict, Iterable, List, Tuple

import numpy as np


class ObjectStore:
    """
    Identifier-keyed store for the objects of one population.

    Features:
    - O(1) get, add, remove operations
    - Stable integer identifiers, never reused
    - Thread-safe operations

    Usage:
        store = ObjectStore()
        ids = store.add([np.array([0.0]), np.array([1.0])])
        vector = store.get(ids[0])
        store.remove(ids[:1])
    """

    # Sentinel object for "id not found"
    _MISSING = object()

    def __init__(self, as_array: bool = True):
        """
        Initialize the store.

        Args:
            as_array: Convert added objects to float numpy arrays
        """
        self._data: Dict[int, Any] = {}
        self._next_id = 0
        self._as_array = as_array

        # Thread safety
        self._lock = threading.RLock()

        # Statistics
        self._stats = {
            "gets": 0,
            "adds": 0,
            "removes": 0,
        }

    def _coerce(self, obj: Any) -> Any:
        if not self._as_array:
            return obj
        array = np.asarray(obj, dtype=float)
        if array.ndim == 0:
            array = array.reshape(1)
        return array

    def add(self, objects: Iterable[Any]) -> List[int]:
        """
        Add objects and return their newly allocated identifiers.

        Args:
            objects: The objects to add, in order

        Returns:
            Identifiers in the same order as the objects
        """
        with self._lock:
            ids = []
            for obj in objects:
                obj_id = self._next_id
                self._next_id += 1
                self._data[obj_id] = self._coerce(obj)
                ids.append(obj_id)
            self._stats["adds"] += len(ids)
            return ids

    def remove(self, ids: Iterable[int]) -> None:
        """
        Remove identifiers from the store.

        Raises:
            KeyError: If any identifier is unknown. Nothing is removed then.
        """
        with self._lock:
            ids = list(ids)
            for obj_id in ids:
                if obj_id not in self._data:
                    raise KeyError(obj_id)
            for obj_id in ids:
                del self._data[obj_id]
            self._stats["removes"] += len(ids)

    def get(self, obj_id: int, default: Any = None) -> Any:
        """Get the object for an identifier, or default if not found."""
        with self._lock:
            self._stats["gets"] += 1
            return self._data.get(obj_id, default)

    def has(self, obj_id: int) -> bool:
        """Check if an identifier exists. O(1) operation."""
        with self._lock:
            return obj_id in self._data

    def ids(self) -> List[int]:
        """Return all identifiers in ascending order."""
        with self._lock:
            return sorted(self._data)

    def items(self) -> List[Tuple[int, Any]]:
        """Return all (id, object) pairs in ascending id order."""
        with self._lock:
            return [(obj_id, self._data[obj_id]) for obj_id in sorted(self._data)]

    def size(self) -> int:
        """Return number of objects in store."""
        with self._lock:
            return len(self._data)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about store operations."""
        with self._lock:
            stats = self._stats.copy()
            stats["total_objects"] = len(self._data)
            stats["next_id"] = self._next_id
            return stats

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, obj_id: int) -> bool:
        return self.has(obj_id)

    def __getitem__(self, obj_id: int) -> Any:
        """Get object for identifier, raises KeyError if not found."""
        value = self.get(obj_id, self._MISSING)
        if value is self._MISSING:
            raise KeyError(obj_id)
        return value

    def __iter__(self):
        return iter(self.ids())
