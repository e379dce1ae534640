"""
Bounded in-memory LRU map.

Used to remember source-file fingerprints → blob descriptors within a process
so repeated builds of the same application skip both hashing and the on-disk
index. Thread-safe for concurrent access.
"""

import threading
from collections import OrderedDict
from typing import Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """
    A Least Recently Used map built on OrderedDict.

    Evicts the least recently used item once ``max_size`` is exceeded.
    All operations are O(1) and guarded by an RLock.

    Args:
        max_size: Maximum number of items to keep (default: 1024)
    """

    def __init__(self, max_size: int = 1024):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._items: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: K) -> Optional[V]:
        """Return the value for ``key`` and mark it most recently used."""
        with self._lock:
            if key not in self._items:
                return None
            self._items.move_to_end(key)
            return self._items[key]

    def set(self, key: K, value: V) -> None:
        """Insert or refresh ``key``, evicting the oldest item at capacity."""
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            elif len(self._items) >= self.max_size:
                self._items.popitem(last=False)
            self._items[key] = value

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            return self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
