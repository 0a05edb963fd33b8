# chainopt/cache.py
"""
In-memory result cache for item executions.

Entries are keyed by item name + canonicalised input payload, so the
same item called with the same input (in any key order) reuses the
stored output. The cache is bounded: least recently used entries are
evicted past ``max_entries`` and entries older than ``ttl_seconds``
expire on access.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def _stable_hash(data: Any, algorithm: str = "sha3_256") -> str:
    """
    Create stable hash from arbitrary data.

    Keys are sorted before serialisation so mapping order never
    changes the digest. Values JSON cannot encode fall back to str().
    """
    json_str = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    hasher = hashlib.new(algorithm)
    hasher.update(json_str.encode())
    return hasher.hexdigest()


def cache_key(item_name: str, payload: Optional[Dict[str, Any]]) -> str:
    """Deterministic cache key for an item invocation."""
    return f"{item_name}:{_stable_hash(payload or {})}"


@dataclass
class CacheEntry:
    """A cached item output."""
    key: str
    item_name: str
    output: Any
    created_at: float
    duration_ms: float = 0.0
    hit_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, ttl_seconds: Optional[float], now: Optional[float] = None) -> bool:
        if ttl_seconds is None:
            return False
        now = time.time() if now is None else now
        return now - self.created_at > ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "item_name": self.item_name,
            "created_at": self.created_at,
            "duration_ms": self.duration_ms,
            "hit_count": self.hit_count,
            "last_accessed": self.last_accessed,
        }


@dataclass
class CacheStats:
    """Statistics about cache usage."""
    total_entries: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    hit_rate: float = 0.0

    def record_hit(self):
        self.hits += 1
        self._update_rate()

    def record_miss(self):
        self.misses += 1
        self._update_rate()

    def _update_rate(self):
        total = self.hits + self.misses
        self.hit_rate = self.hits / total if total > 0 else 0.0

    @property
    def size(self) -> int:
        return self.total_entries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.total_entries,
            "total_entries": self.total_entries,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


class ResultCache:
    """
    Bounded LRU cache of item outputs.

    All reads and writes go through one lock, so concurrent steps never
    lose updates to an entry or to the statistics.
    """

    def __init__(self, max_entries: int = 1000, ttl_seconds: Optional[float] = None):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.stats = CacheStats()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Look up an entry, counting a hit or miss.

        A hit bumps the entry's hit counter and marks it most recently
        used. Expired entries are dropped and count as a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(self.ttl_seconds):
                logger.debug(f"Cache entry expired: {key}")
                del self._entries[key]
                self.stats.total_entries = len(self._entries)
                entry = None

            if entry is None:
                self.stats.record_miss()
                return None

            entry.hit_count += 1
            entry.last_accessed = time.time()
            self._entries.move_to_end(key)
            self.stats.record_hit()
            logger.debug(f"Cache hit: {key}")
            return entry

    def put(self, key: str, item_name: str, output: Any, duration_ms: float = 0.0) -> CacheEntry:
        """Store an output, replacing any previous entry for the key."""
        return self.upsert(
            key,
            lambda existing: CacheEntry(
                key=key,
                item_name=item_name,
                output=output,
                created_at=time.time(),
                duration_ms=duration_ms,
            ),
        )

    def upsert(self, key: str, update: Callable[[Optional[CacheEntry]], CacheEntry]) -> CacheEntry:
        """
        Atomically read-modify-write one entry.

        Args:
            key: Cache key
            update: Receives the current entry (or None), returns the new one

        Returns:
            The stored entry
        """
        with self._lock:
            entry = update(self._entries.get(key))
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._evict_locked()
            self.stats.total_entries = len(self._entries)
            logger.debug(f"Cached: {key}")
            return entry

    def _evict_locked(self):
        while len(self._entries) > self.max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            logger.debug(f"Evicted least recently used entry: {evicted_key}")

    def has(self, key: str) -> bool:
        """Check if a key is cached (without affecting stats)."""
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self.ttl_seconds)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Get entry metadata (without affecting stats or recency)."""
        return self._entries.get(key)

    def remove(self, key: str) -> bool:
        """Remove an entry from the cache."""
        with self._lock:
            if key not in self._entries:
                return False
            del self._entries[key]
            self.stats.total_entries = len(self._entries)
            return True

    def clear(self):
        """Clear all cached entries and reset statistics."""
        with self._lock:
            self._entries.clear()
            self.stats = CacheStats()

    def prune(self, max_age_seconds: Optional[float] = None) -> int:
        """
        Remove entries older than ``max_age_seconds`` (default: the TTL).

        Returns:
            Number of entries removed
        """
        max_age = self.ttl_seconds if max_age_seconds is None else max_age_seconds
        if max_age is None:
            return 0

        now = time.time()
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.is_expired(max_age, now)]
            for key in stale:
                del self._entries[key]
            self.stats.total_entries = len(self._entries)
        if stale:
            logger.info(f"Pruned {len(stale)} cache entries")
        return len(stale)

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self.stats

    def list_entries(self) -> List[CacheEntry]:
        """List entries from least to most recently used."""
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)
