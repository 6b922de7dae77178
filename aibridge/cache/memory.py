import threading
from collections import OrderedDict
from typing import Any, Optional, Tuple

from aibridge.cache.base import CacheBackend
from aibridge.schemas import CacheRequest


class VolatileCache(CacheBackend):
    """Bounded in-process LRU table, the fastest and most volatile layer."""

    name = "memory"

    def __init__(self, max_entries: int = 1024) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be at least 1 (received {max_entries}).")
        self.max_entries = max_entries
        self._store: "OrderedDict[Tuple, Any]" = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, request: CacheRequest) -> Optional[Any]:
        key = request.identity()
        with self._lock:
            if key not in self._store:
                return None
            self._store.move_to_end(key)
            return self._store[key]

    async def set(self, request: CacheRequest, value: Any) -> None:
        key = request.identity()
        with self._lock:
            if key in self._store:
                self._store.move_to_end(key)
            self._store[key] = value
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
