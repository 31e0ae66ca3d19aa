"""In-process TTL cache and the canonical aggregation cache key."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Thread-safe mapping whose entries expire ``ttl`` seconds after being set."""

    def __init__(
        self,
        ttl: float,
        *,
        max_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._max_size = max_size
        self._clock = clock
        self._data: dict[str, tuple[float, V]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._data[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        with self._lock:
            if self._max_size and len(self._data) >= self._max_size and key not in self._data:
                # Evict the entry closest to expiry.
                oldest = min(self._data, key=lambda k: self._data[k][0])
                del self._data[oldest]
            self._data[key] = (self._clock() + (ttl if ttl is not None else self._ttl), value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            for k in keys:
                del self._data[k]
            return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
            return count

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (exp, _) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def aggregation_cache_key(
    *,
    sources: Iterable[str] | None,
    query: str | None,
    category: str | None,
    country: str | None,
    language: str | None,
    limit: int,
    strategy: str,
    extra: dict | None = None,
) -> str:
    """Canonical hash of the request parameters that shape an aggregation result."""
    canonical = json.dumps(
        {
            "sources": sorted(sources) if sources is not None else None,
            "query": query,
            "category": category,
            "country": country,
            "language": language,
            "limit": limit,
            "strategy": strategy,
            "extra": extra or {},
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return "news:aggregated:" + hashlib.sha256(canonical.encode()).hexdigest()[:24]
