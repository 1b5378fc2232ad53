"""
In-memory caches owned by service instances.
"""
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple


class TTLCache:
    """
    Thread-safe key -> (value, timestamp) cache.

    With ``ttl_seconds=None`` entries never expire and are only dropped by
    explicit invalidation or LRU eviction.
    """

    def __init__(self, ttl_seconds: Optional[float] = 300.0, maxsize: int = 512,
                 clock: Callable[[], float] = time.monotonic):
        self._entries: "OrderedDict[Hashable, Tuple[Any, float]]" = OrderedDict()
        self._ttl = ttl_seconds
        self._maxsize = maxsize
        self._clock = clock
        self._lock = threading.RLock()

    def _is_fresh(self, stored_at: float) -> bool:
        return self._ttl is None or self._clock() - stored_at < self._ttl

    def get(self, key: Hashable) -> Tuple[bool, Any]:
        """Return ``(found, value)``; expired entries are dropped on read."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            value, stored_at = entry
            if not self._is_fresh(stored_at):
                del self._entries[key]
                return False, None
            self._entries.move_to_end(key)
            return True, value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self._maxsize:
                self._entries.popitem(last=False)

    def pop(self, key: Hashable) -> Any:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None or not self._is_fresh(entry[1]):
                return None
            return entry[0]

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key matches; returns the number removed."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            return self.invalidate_where(lambda key: not self._is_fresh(self._entries[key][1]))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
