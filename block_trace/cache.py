"""
Trace Cache - Bounded TTL + LRU cache of processed trace analyses.

- Expired entries are removed lazily on read (counted as a miss) or by cleanup()
- When full, set() evicts the least recently accessed entry first
- Stored analyses are owned by the cache: writes and reads copy

All mutations go through one lock so the cache can be shared between
threads as well as coroutines.
"""

import asyncio
import copy
import json
import logging
import threading
from typing import Any, Awaitable, Callable, Iterable, Optional

from block_trace.clock import ClockProtocol, get_clock
from block_trace.models import CacheEntry, CacheStats, MemoryUsage, ProcessedTraceAnalysis


logger = logging.getLogger(__name__)


CACHE_KEY_PREFIX = "debug_block_"

# Per-entry bookkeeping overhead added to the serialized size estimate
ENTRY_OVERHEAD_BYTES = 100


def cache_key(block_number: Any) -> str:
    """Cache key for a resolved block number."""
    return f"{CACHE_KEY_PREFIX}{block_number}"


class TraceCache:
    """
    In-memory cache for ProcessedTraceAnalysis objects.

    Example:
        cache = TraceCache(max_entries=50, ttl_seconds=1800)
        cache.set(cache_key(18500000), analysis)
        cached = cache.get(cache_key(18500000))
    """

    DEFAULT_MAX_ENTRIES = 50
    DEFAULT_TTL_SECONDS = 30 * 60

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._clock = clock if clock is not None else get_clock()

        self._entries: dict[str, CacheEntry] = {}
        # key -> (access timestamp, access sequence); sequence breaks ties
        self._access_order: dict[str, tuple[float, int]] = {}
        self._sequence = 0
        self._hits = 0
        self._misses = 0
        self._lock = threading.RLock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def _touch(self, key: str, timestamp: float) -> None:
        self._sequence += 1
        self._access_order[key] = (timestamp, self._sequence)

    def _remove(self, key: str) -> bool:
        self._access_order.pop(key, None)
        return self._entries.pop(key, None) is not None

    # ─────────────────────────────────────────────────────────────
    # Core operations
    # ─────────────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[ProcessedTraceAnalysis]:
        """Return a copy of the cached analysis, or None on miss/expiry."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = self._clock.timestamp()
            if entry.is_expired(now):
                self._remove(key)
                self._misses += 1
                logger.debug(f"[cache] Expired entry dropped: {key}")
                return None

            entry.last_accessed = now
            self._touch(key, now)
            self._hits += 1
            logger.debug(f"[cache] Hit for key: {key}")
            return copy.deepcopy(entry.analysis)

    def set(self, key: str, analysis: ProcessedTraceAnalysis) -> None:
        """Store a copy of the analysis with a fresh TTL."""
        with self._lock:
            now = self._clock.timestamp()
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_lru()

            self._entries[key] = CacheEntry(
                key=key,
                analysis=copy.deepcopy(analysis),
                created_at=now,
                expires_at=now + self._ttl_seconds,
                last_accessed=now,
            )
            self._touch(key, now)
            logger.debug(f"[cache] Stored {key}, size={len(self._entries)}")

    def has(self, key: str) -> bool:
        """Check presence without touching hit/miss counters or LRU order."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock.timestamp()):
                self._remove(key)
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key)

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._access_order.clear()
            self._hits = 0
            self._misses = 0
        logger.info("[cache] Cache cleared")

    def _evict_lru(self) -> None:
        if not self._access_order:
            return
        oldest_key = min(self._access_order, key=self._access_order.__getitem__)
        self._remove(oldest_key)
        logger.debug(f"[cache] Evicted LRU entry: {oldest_key}")

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    # ─────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total * 100) if total > 0 else 0.0
            return CacheStats(
                size=len(self._entries),
                max_size=self._max_entries,
                hits=self._hits,
                misses=self._misses,
                hit_rate=round(hit_rate, 2),
                entries=list(self._entries),
            )

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock.timestamp()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
        if expired:
            logger.info(f"[cache] Cleaned up {len(expired)} expired entries")
        return len(expired)

    def prune_to_size(self, target_size: int) -> int:
        """Evict least recently accessed entries until at most target_size remain."""
        with self._lock:
            excess = len(self._entries) - max(target_size, 0)
            if excess <= 0:
                return 0
            oldest = sorted(self._access_order, key=self._access_order.__getitem__)[:excess]
            for key in oldest:
                self._remove(key)
        logger.info(f"[cache] Pruned to {target_size} entries (removed {excess})")
        return excess

    def get_memory_usage(self) -> MemoryUsage:
        """Rough size estimate from each analysis's serialized form."""
        with self._lock:
            total = sum(
                len(json.dumps(entry.analysis.to_dict())) * 2 + ENTRY_OVERHEAD_BYTES
                for entry in self._entries.values()
            )
            count = len(self._entries)
        return MemoryUsage(
            estimated_size_bytes=total,
            entries_count=count,
            average_size_per_entry=round(total / count) if count else 0,
        )

    def get_entries_by_age(self) -> list[dict[str, Any]]:
        """Entries sorted oldest first."""
        with self._lock:
            now = self._clock.timestamp()
            entries = [
                {
                    "key": key,
                    "age_seconds": entry.age_seconds(now),
                    "expires_in_seconds": entry.expires_at - now,
                }
                for key, entry in self._entries.items()
            ]
        return sorted(entries, key=lambda e: e["age_seconds"], reverse=True)

    async def warm_cache(
        self,
        block_numbers: Iterable[Any],
        fetcher: Callable[[Any], Awaitable[ProcessedTraceAnalysis]],
    ) -> int:
        """
        Fetch and store every block not already cached.

        Individual fetch failures are logged and skipped. Returns the
        number of entries added.
        """
        numbers = list(block_numbers)
        logger.info(f"[cache] Warming cache with {len(numbers)} blocks")

        async def warm_one(block_number: Any) -> bool:
            key = cache_key(block_number)
            if self.has(key):
                return False
            try:
                analysis = await fetcher(block_number)
            except Exception as e:
                logger.warning(f"[cache] Failed to warm cache for block {block_number}: {e}")
                return False
            self.set(key, analysis)
            return True

        results = await asyncio.gather(*(warm_one(n) for n in numbers))
        added = sum(results)
        logger.info(f"[cache] Cache warming completed, added {added}, size={len(self)}")
        return added

    # ─────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────

    def export(self) -> list[dict[str, Any]]:
        """Serialize entries as {key, data, timestamp, expiresAt} records."""
        with self._lock:
            return [
                {
                    "key": key,
                    "data": entry.analysis.to_dict(),
                    "timestamp": entry.created_at,
                    "expiresAt": entry.expires_at,
                }
                for key, entry in self._entries.items()
            ]

    def import_entries(self, records: Iterable[Any]) -> int:
        """
        Restore exported records.

        Records already past their expiry are dropped silently. Corrupt
        records are logged and skipped. Returns the number imported.
        """
        imported = 0
        total = 0
        with self._lock:
            now = self._clock.timestamp()
            for record in records:
                total += 1
                try:
                    key = record["key"]
                    expires_at = float(record["expiresAt"])
                    timestamp = float(record["timestamp"])
                    data = record["data"]
                    analysis = (
                        data if isinstance(data, ProcessedTraceAnalysis)
                        else ProcessedTraceAnalysis.from_dict(data)
                    )
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"[cache] Skipping corrupt cache record #{total}: {e!r}")
                    continue

                if expires_at <= now:
                    continue

                self._entries[key] = CacheEntry(
                    key=key,
                    analysis=copy.deepcopy(analysis),
                    created_at=timestamp,
                    expires_at=expires_at,
                    last_accessed=timestamp,
                )
                self._touch(key, timestamp)
                imported += 1

            if len(self._entries) > self._max_entries:
                self.prune_to_size(self._max_entries)

        logger.info(f"[cache] Imported {imported}/{total} cache entries")
        return imported

    def __repr__(self) -> str:
        return f"<TraceCache(size={len(self._entries)}, max={self._max_entries}, ttl={self._ttl_seconds}s)>"
