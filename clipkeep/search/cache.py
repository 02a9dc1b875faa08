# Purpose: bounded LRU cache in front of the storage engine's search
# keyed by the exact query parameters, shared by every caller -> guarded by a lock
# a hit refreshes recency, inserting past capacity evicts the least recently USED key
# any delete / clear empties the whole cache

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from clipkeep.core import config

V = TypeVar("V")


@dataclass(frozen=True)
class CacheKey:
    query: str
    limit: int
    preview_length: int
    filter_type: Optional[str]


class SearchCache(Generic[V]):
    def __init__(self, capacity: int = config.search_cache_size):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: "OrderedDict[CacheKey, V]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[V]:
        with self._lock:
            if key not in self._entries:
                return None
            self._entries.move_to_end(key)
            return self._entries[key]

    def put(self, key: CacheKey, value: V):
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def invalidate(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
