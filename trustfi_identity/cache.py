"""Small TTL cache shared by the DID manager and the credential service.

Entries are ``(value, timestamp)`` pairs. An entry older than the cache TTL is
treated as absent and dropped on read; ``sweep()`` drops every expired entry at
once. A cache built with ``ttl=None`` never expires entries.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    timestamp: float


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
        }


class TTLCache(Generic[K, V]):
    def __init__(self, ttl: Optional[float], clock: Callable[[], float] = time.monotonic):
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive or None")
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}
        self.metrics = CacheMetrics()

    def _expired(self, entry: CacheEntry[V], now: float) -> bool:
        return self.ttl is not None and now - entry.timestamp >= self.ttl

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self.metrics.misses += 1
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            self.metrics.expirations += 1
            self.metrics.misses += 1
            return None
        self.metrics.hits += 1
        return entry.value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = CacheEntry(value=value, timestamp=self._clock())

    def evict(self, key: K) -> bool:
        """Removes ``key``; returns whether it was present."""
        if self._entries.pop(key, None) is None:
            return False
        self.metrics.evictions += 1
        return True

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        self.metrics.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[K]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and not self._expired(entry, self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {"size": len(self._entries), "keys": [str(k) for k in self._entries], **self.metrics.to_dict()}
