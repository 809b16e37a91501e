"""Bounded, thread-safe caches with insertion-order eviction."""

import logging
import threading
from typing import Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """Bounded map that evicts the oldest inserted entries when full.

    Eviction is FIFO by first insertion: reading an entry or overwriting its
    value does not move it. Every mutation happens under a lock so a single
    instance can be shared by concurrent chats and worker threads.
    """

    def __init__(self, max_size: int, evict_fraction: float = 0.0, name: str = "cache"):
        """Initialize the cache.

        Args:
            max_size: Maximum number of entries
            evict_fraction: Share of ``max_size`` dropped when full (at least one entry)
            name: Label used in log messages
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.evict_fraction = evict_fraction
        self.name = name
        self._data: dict[K, V] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: K, default: V | None = None) -> V | None:
        """Return the cached value or ``default``, counting hits and misses."""
        with self._lock:
            if key in self._data:
                self._hits += 1
                return self._data[key]
            self._misses += 1
            return default

    def put(self, key: K, value: V) -> None:
        """Insert or overwrite an entry, evicting the oldest ones when full."""
        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._evict_locked()
            self._data[key] = value

    def pop(self, key: K, default: V | None = None) -> V | None:
        with self._lock:
            return self._data.pop(key, default)

    def resize(self, max_size: int) -> None:
        """Change the bound, dropping the oldest entries that no longer fit."""
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        with self._lock:
            self.max_size = max_size
            overflow = len(self._data) - max_size
            if overflow > 0:
                for key in list(self._data)[:overflow]:
                    del self._data[key]
                logger.debug(f"Resized {self.name} to {max_size}, dropped {overflow} entries")

    def _evict_locked(self) -> None:
        count = max(1, int(self.max_size * self.evict_fraction))
        oldest = list(self._data)[:count]
        for key in oldest:
            del self._data[key]
        logger.debug(f"Evicted {len(oldest)} entries from {self.name}")

    def keys(self) -> list[K]:
        """Snapshot of keys, oldest first."""
        with self._lock:
            return list(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._hits = 0
            self._misses = 0

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def stats(self) -> dict[str, float]:
        """Size and hit statistics."""
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }
