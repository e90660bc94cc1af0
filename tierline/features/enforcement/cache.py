"""
Short-lived cache for enforcement lookups (meter, tier, assignment, limit).

Entries expire after LIMIT_CACHE_TTL_SECONDS and every meter, limit, tier or
assignment mutation clears the cache, so a stale limit is served for at most
one TTL window. Expired entries are swept on write at most once per TTL and
the map never holds more than max_entries keys.
"""

import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from tierline.core.config import settings
from tierline.core.metrics import limit_cache_entries


class LimitCache:
    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        self._ttl_override = ttl_seconds
        self._max_override = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._next_sweep = 0.0
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        if self._ttl_override is not None:
            return self._ttl_override
        return settings.LIMIT_CACHE_TTL_SECONDS

    @property
    def max_entries(self) -> int:
        if self._max_override is not None:
            return self._max_override
        return settings.LIMIT_CACHE_MAX_ENTRIES

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                limit_cache_entries.set(len(self._entries))
                return None
            return value

    def _sweep(self, now: float, ttl: float) -> None:
        # Caller holds the lock
        if now >= self._next_sweep:
            expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
            self._next_sweep = now + ttl

    def set(self, key: Hashable, value: Any) -> None:
        ttl = self.ttl_seconds
        if ttl <= 0:
            return
        with self._lock:
            now = self._clock()
            self._sweep(now, ttl)
            self._entries.pop(key, None)
            # Dicts keep insertion order, so the first key is the oldest write
            while self._entries and len(self._entries) >= self.max_entries:
                del self._entries[next(iter(self._entries))]
            self._entries[key] = (now + ttl, value)
            limit_cache_entries.set(len(self._entries))

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = loader()
            self.set(key, value)
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()
            limit_cache_entries.set(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


limit_cache = LimitCache()
