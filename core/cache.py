#!/usr/bin/env python3
"""
TTL cache owned by a single collaborator.

Entries expire after ``ttl_seconds`` and can be dropped explicitly with
``invalidate`` when the owner knows the backing data changed.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional


@dataclass
class CacheEntry:
    """Cache entry metadata."""
    value: Any
    expires_at: float
    hits: int = 0


class TTLCache:
    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.stats = {"hits": 0, "misses": 0, "invalidations": 0}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self.stats["misses"] += 1
            return None
        entry.hits += 1
        self.stats["hits"] += 1
        return entry.value

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value, loading it once under the lock on a miss."""
        value = self.get(key)
        if value is not None:
            return value
        async with self._lock:
            value = self.get(key)
            if value is not None:
                return value
            value = await loader()
            self.set(key, value)
            return value

    def invalidate(self, key: Optional[Hashable] = None):
        """Drop one key, or everything when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
        self.stats["invalidations"] += 1

    def __len__(self) -> int:
        return len(self._entries)
