"""
Bounded fuzzy-alias cache.

Maps a fuzzy input key to the canonical MatchKey it resolved to. Evicts
least-recently-used entries past the capacity cap and any entry older than
the TTL. Losing the cache only costs a re-match; the resolver never trusts
an entry whose target key is no longer known.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import structlog

from livefusion.models.schemas import MatchKey

logger = structlog.get_logger()


@dataclass
class AliasCacheEntry:
    """One cached fuzzy resolution."""
    fuzzy_key: MatchKey
    canonical_key: MatchKey
    method: str
    overlap: int
    swapped: bool
    created_at: float
    last_used_at: float


class AliasCache:
    """LRU + TTL bounded map of fuzzy key -> canonical key."""

    def __init__(self, capacity: int = 10_000, ttl_seconds: float = 6 * 3600):
        self.capacity = max(1, capacity)
        self.ttl_seconds = ttl_seconds
        self._entries: "OrderedDict[MatchKey, AliasCacheEntry]" = OrderedDict()
        self.logger = logger.bind(component="alias_cache")

        # Metrics
        self._hits = 0
        self._misses = 0
        self._evicted_lru = 0
        self._evicted_ttl = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, fuzzy_key: MatchKey, now: Optional[float] = None) -> Optional[AliasCacheEntry]:
        """Look up a fuzzy key. Expired entries are dropped on read."""
        now = now if now is not None else time.time()
        entry = self._entries.get(fuzzy_key)
        if entry is None:
            self._misses += 1
            return None

        if now - entry.created_at > self.ttl_seconds:
            del self._entries[fuzzy_key]
            self._evicted_ttl += 1
            self._misses += 1
            return None

        entry.last_used_at = now
        self._entries.move_to_end(fuzzy_key)
        self._hits += 1
        return entry

    def put(
        self,
        fuzzy_key: MatchKey,
        canonical_key: MatchKey,
        method: str,
        overlap: int,
        swapped: bool = False,
        now: Optional[float] = None,
    ) -> AliasCacheEntry:
        now = now if now is not None else time.time()
        entry = AliasCacheEntry(
            fuzzy_key=fuzzy_key,
            canonical_key=canonical_key,
            method=method,
            overlap=overlap,
            swapped=swapped,
            created_at=now,
            last_used_at=now,
        )
        self._entries[fuzzy_key] = entry
        self._entries.move_to_end(fuzzy_key)

        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)
            self._evicted_lru += 1

        return entry

    def invalidate(self, fuzzy_key: MatchKey) -> None:
        self._entries.pop(fuzzy_key, None)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop every entry past its TTL. Returns the number removed."""
        now = now if now is not None else time.time()
        expired = [k for k, e in self._entries.items() if now - e.created_at > self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        self._evicted_ttl += len(expired)
        if expired:
            self.logger.debug("Alias cache entries expired", count=len(expired), size=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def get_metrics(self) -> dict:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self._hits,
            "misses": self._misses,
            "evicted_lru": self._evicted_lru,
            "evicted_ttl": self._evicted_ttl,
        }
