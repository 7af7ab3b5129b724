# retrieval/cache.py
"""Bounded TTL cache for fused search results."""

import time
from typing import Optional

from ..config import Config
from ..models import SearchResult


class QueryResultCache:
    """
    Simple TTL cache keyed by (query, limit).

    Entries expire after ttl_seconds; at capacity the oldest entry is evicted.
    Invalidation is wholesale: any indexing pass that changes content clears it.
    """

    def __init__(
        self, ttl_seconds: float = Config.QUERY_CACHE_TTL, max_size: int = Config.QUERY_CACHE_SIZE
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._cache: dict[tuple[str, int], tuple[list[SearchResult], float]] = {}
        self.generation = 0
        self.hits = 0
        self.misses = 0

    def get(self, query: str, limit: int) -> Optional[list[SearchResult]]:
        """Get cached results if not expired."""
        key = (query, limit)
        if key not in self._cache:
            self.misses += 1
            return None

        results, cached_at = self._cache[key]
        if time.monotonic() - cached_at > self.ttl_seconds:
            # Expired
            del self._cache[key]
            self.misses += 1
            return None

        self.hits += 1
        return list(results)

    def set(
        self,
        query: str,
        limit: int,
        results: list[SearchResult],
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store results unless the cache was cleared since generation was read.

        Returns:
            True if stored
        """
        if generation is not None and generation != self.generation:
            return False

        key = (query, limit)
        if key not in self._cache and len(self._cache) >= self.max_size:
            oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
            del self._cache[oldest_key]

        self._cache[key] = (list(results), time.monotonic())
        return True

    def clear(self) -> None:
        """Clear the cache and start a new generation."""
        self._cache.clear()
        self.generation += 1

    def __len__(self) -> int:
        return len(self._cache)
