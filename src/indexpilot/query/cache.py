"""Result cache for read queries.

Entries are keyed by normalized SQL plus canonically serialized parameters,
expire after a TTL and are evicted in least-recently-used order once the
cache is full. A background task sweeps expired entries.
"""

import asyncio
import fnmatch
import json
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config.models import CacheConfig
from ..core import AsyncComponent
from ..core.utils import StringUtils
from ..logging import get_logger

DEFAULT_ENTRY_SIZE = 1000


@dataclass
class CacheEntry:
    """A cached query result.

    Attributes:
        key: Cache key
        data: Cached result payload
        created_at: Insertion time
        expires_at: Expiry time
        last_accessed: Time of the last hit
        hits: Number of hits served
        size: Estimated size in bytes
    """

    key: str
    data: Any
    created_at: float
    expires_at: float
    last_accessed: float
    hits: int = 0
    size: int = DEFAULT_ENTRY_SIZE

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStatistics:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    cleanups: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total else 0.0


def estimate_size(data: Any) -> int:
    """Rough in-memory size of a payload in bytes."""
    try:
        return len(json.dumps(data, default=str)) * 2
    except (TypeError, ValueError):
        return DEFAULT_ENTRY_SIZE


class CacheManager(AsyncComponent[CacheConfig]):
    """TTL and LRU result cache.

    The cache is usable without ``initialize()``; initializing only starts
    the periodic sweep of expired entries.

    Example:
        >>> cache = CacheManager(CacheConfig(max_size=100))
        >>> cache.set("SELECT * FROM orders WHERE id = %s", [1], rows)
        >>> cache.get("select *  from orders where id = %s", [1]) is rows
        True
    """

    component_name = "CacheManager"

    def __init__(self, config: CacheConfig, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(config)
        self.logger = get_logger("query.cache")
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._stats = CacheStatistics()
        self._sweep_task: Optional[asyncio.Task] = None

    async def _async_initialize(self) -> None:
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info(
            "Cache sweep started",
            cleanup_interval=self.config.cleanup_interval,
            max_size=self.config.max_size,
        )

    async def _async_cleanup(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            self.cleanup_expired()

    @staticmethod
    def generate_key(sql: str, params: Optional[Sequence[Any]] = None) -> str:
        """Build the cache key for a statement and its parameters.

        Example:
            >>> CacheManager.generate_key("SELECT  *\\nFROM t WHERE a = %s", [1])
            'select * from t where a = %s:[1]'
        """
        normalized = StringUtils.collapse_whitespace(sql).lower()
        serialized = json.dumps(list(params) if params is not None else [], sort_keys=True, default=str)
        return f"{normalized}:{serialized}"

    def get(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Any]:
        """Return the cached payload or None on miss or expiry."""
        key = self.generate_key(sql, params)
        entry = self._entries.get(key)
        now = self._clock()

        if entry is None:
            self._stats.misses += 1
            return None

        if entry.is_expired(now):
            del self._entries[key]
            self._stats.misses += 1
            return None

        entry.hits += 1
        entry.last_accessed = now
        if self.config.enable_lru:
            self._entries.move_to_end(key)
        self._stats.hits += 1
        return entry.data

    def set(
        self,
        sql: str,
        params: Optional[Sequence[Any]],
        data: Any,
        ttl: Optional[float] = None,
    ) -> CacheEntry:
        """Store a payload, evicting one entry when the cache is full.

        Args:
            sql: Statement text
            params: Statement parameters
            data: Payload to cache
            ttl: Seconds to keep the entry, defaults to ``default_ttl``

        Returns:
            The stored entry
        """
        key = self.generate_key(sql, params)
        now = self._clock()

        if key not in self._entries and len(self._entries) >= self.config.max_size:
            self._evict_one()

        entry = CacheEntry(
            key=key,
            data=data,
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.config.default_ttl),
            last_accessed=now,
            size=estimate_size(data),
        )
        self._entries.pop(key, None)
        self._entries[key] = entry
        self._stats.sets += 1
        return entry

    def _evict_one(self) -> None:
        # With LRU off the dict stays in insertion order, so the head is the oldest entry
        key, _ = self._entries.popitem(last=False)
        self._stats.evictions += 1
        self.logger.debug("Cache entry evicted", key=StringUtils.truncate_string(key, 100))

    def delete(self, sql: str, params: Optional[Sequence[Any]] = None) -> bool:
        return self._entries.pop(self.generate_key(sql, params), None) is not None

    def cleanup_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

        self._stats.cleanups += 1
        if expired:
            self.logger.debug("Expired cache entries removed", removed=len(expired))
        return len(expired)

    def invalidate(self, pattern: str) -> int:
        """Remove entries whose key matches a pattern.

        Patterns without ``*`` or ``?`` match as a substring. Otherwise the
        pattern is a glob matched against the whole key. Both are case
        insensitive.

        Returns:
            Number of entries removed
        """
        lowered = pattern.lower()
        if "*" in lowered or "?" in lowered:
            regex = re.compile(fnmatch.translate(lowered), re.IGNORECASE | re.DOTALL)
            matches: Callable[[str], bool] = lambda key: regex.match(key) is not None
        else:
            matches = lambda key: lowered in key

        removed = [key for key in self._entries if matches(key)]
        for key in removed:
            del self._entries[key]

        self._stats.invalidations += len(removed)
        self.logger.info("Cache invalidated", pattern=pattern, removed=len(removed))
        return len(removed)

    def invalidate_by_table(self, table: str) -> int:
        return self.invalidate(f"*{table}*")

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self.logger.info("Cache cleared", removed=count)
        return count

    def destroy(self) -> None:
        """Stop the sweep task and drop every entry."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        self._entries.clear()
        self._initialized = False

    def _on_config_updated(self) -> None:
        while len(self._entries) > self.config.max_size:
            self._evict_one()

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get_stats(self) -> Dict[str, Any]:
        """Cache counters, size and configuration."""
        return {
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "sets": self._stats.sets,
            "evictions": self._stats.evictions,
            "cleanups": self._stats.cleanups,
            "invalidations": self._stats.invalidations,
            "hit_rate": round(self._stats.hit_rate, 2),
            "size": len(self._entries),
            "max_size": self.config.max_size,
            "memory_usage_bytes": sum(entry.size for entry in self._entries.values()),
            "config": self.config.to_dict(),
        }

    def get_top_queries(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most frequently hit entries."""
        now = self._clock()
        entries = sorted(self._entries.values(), key=lambda e: e.hits, reverse=True)[:limit]
        return [
            {
                "key": StringUtils.truncate_string(entry.key, 100),
                "hits": entry.hits,
                "age_seconds": round(now - entry.created_at, 3),
                "size": entry.size,
            }
            for entry in entries
        ]

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update(self.get_stats())
        return metrics
