"""
cache_store.py
--------------
A bounded, thread-safe LRU + TTL store for API response payloads.

Features:
- TTL expiration per entry (lazy, on read; plus an optional purge pass)
- Aggregate size accounting against a global byte ceiling
- LRU eviction under size or entry-count pressure
- Tag index for bulk invalidation ("legislation", "case:<id>", ...)

Intended for single-process FastAPI apps. Nothing is shared across worker
processes and nothing survives a restart.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from collections import OrderedDict
from threading import RLock
from time import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Set, Tuple

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_TOTAL_BYTES = 100 * 1024 * 1024
DEFAULT_MAX_ENTRIES = 10_000


@dataclass(frozen=True)
class CacheConfig:
    """Per-route caching policy. `duration` is in milliseconds; 0 disables caching."""
    duration: int
    max_entries: int = DEFAULT_MAX_ENTRIES
    tags: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if isinstance(self.duration, bool) or not isinstance(self.duration, int) or self.duration < 0:
            raise ValueError(f"duration must be a non-negative int (ms), got {self.duration!r}")
        if isinstance(self.max_entries, bool) or not isinstance(self.max_entries, int) or self.max_entries < 0:
            raise ValueError(f"max_entries must be a non-negative int, got {self.max_entries!r}")
        tags = tuple(self.tags)
        if not all(isinstance(t, str) for t in tags):
            raise ValueError(f"tags must be strings, got {self.tags!r}")
        object.__setattr__(self, "tags", tags)

    @property
    def enabled(self) -> bool:
        return self.duration > 0

    @property
    def max_age_seconds(self) -> int:
        return self.duration // 1000

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "CacheConfig":
        """Build a config from a loose mapping, ignoring keys we don't know about."""
        known = {"duration", "max_entries", "tags"}
        ignored = sorted(set(mapping) - known)
        if ignored:
            logger.debug("CacheConfig ignoring unknown fields: %s", ignored)
        return cls(**{k: v for k, v in mapping.items() if k in known})


@dataclass
class CacheEntry:
    key: str
    payload: Any
    created_at: float
    expires_at: float
    size_bytes: int
    tags: Tuple[str, ...] = ()
    hit_count: int = 0
    last_accessed_at: float = field(default=0.0)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


def payload_size(payload: Any) -> int:
    """Size in bytes of the compact JSON encoding of `payload`."""
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return len(encoded.encode("utf-8"))


class MemoryCache:
    """
    LRU cache with TTL, size accounting and tag invalidation.
    - get(): returns the payload or `default` (expired entries are purged on access)
    - set(): stores a payload under a CacheConfig; evicts LRU entries under pressure
    - delete() / delete_by_tags() / clear(): explicit removal
    - stats(): read-only snapshot

    Thread-safe via a single RLock. The OrderedDict is kept in access order,
    so the first item is always the least recently used.
    """
    def __init__(
        self,
        max_total_size: int = DEFAULT_MAX_TOTAL_BYTES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time,
    ) -> None:
        self.max_total_size = max_total_size
        self.max_entries = max_entries
        self._clock = clock
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = {}
        self._total_size = 0
        self._lock = RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and not entry.is_expired(self._now())

    @property
    def total_size(self) -> int:
        return self._total_size

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return default
            now = self._now()
            if entry.is_expired(now):
                self._remove(key)
                self._misses += 1
                return default
            entry.hit_count += 1
            entry.last_accessed_at = now
            self._store.move_to_end(key)
            self._hits += 1
            return entry.payload

    def set(self, key: str, payload: Any, config: CacheConfig) -> bool:
        """Store `payload` under `key`. Returns False when the write was skipped."""
        if config.duration <= 0:
            return False
        try:
            size = payload_size(payload)
        except Exception as e:
            # RecursionError on deeply nested payloads lands here too.
            logger.warning("CACHE SKIP → key=%s unserializable payload: %s", key, e)
            self.delete(key)
            return False
        if size > self.max_total_size:
            logger.warning(
                "CACHE SKIP → key=%s payload %s bytes exceeds ceiling %s", key, size, self.max_total_size
            )
            self.delete(key)
            return False

        with self._lock:
            self._remove(key)
            self._evict_for_space(size)

            now = self._now()
            entry = CacheEntry(
                key=key,
                payload=payload,
                created_at=now,
                expires_at=now + config.duration / 1000.0,
                size_bytes=size,
                tags=config.tags,
                hit_count=0,
                last_accessed_at=now,
            )
            self._store[key] = entry
            self._total_size += size
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(key)

            self._evict_for_config(config, keep=key)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key) is not None

    def delete_by_tags(self, tags: Iterable[str]) -> int:
        if isinstance(tags, str):
            tags = (tags,)
        with self._lock:
            keys: Set[str] = set()
            for tag in set(tags):
                keys |= self._tag_index.get(tag, set())
            for key in keys:
                self._remove(key)
            return len(keys)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._now()
            expired = [k for k, e in self._store.items() if e.is_expired(now)]
            for key in expired:
                self._remove(key)
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._tag_index.clear()
            self._total_size = 0
            self._hits = self._misses = self._evictions = 0

    def stats(self) -> dict:
        with self._lock:
            entries = list(self._store.values())
            count = len(entries)
            return {
                "entry_count": count,
                "total_size_bytes": self._total_size,
                "average_size_bytes": self._total_size / count if count else 0,
                "total_hits": sum(e.hit_count for e in entries),
                "oldest_entry_timestamp": min((e.created_at for e in entries), default=None),
                "newest_entry_timestamp": max((e.created_at for e in entries), default=None),
                "max_total_size_bytes": self.max_total_size,
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    # -- internals (callers hold the lock) --------------------------------

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._store.pop(key, None)
        if entry is None:
            return None
        # Never let accounting drift below zero.
        self._total_size = max(0, self._total_size - entry.size_bytes)
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return entry

    def _evict_lru(self) -> None:
        key = next(iter(self._store))
        self._remove(key)
        self._evictions += 1
        logger.info("CACHE EVICT → key=%s", key)

    def _evict_for_space(self, incoming: int) -> None:
        while self._store and (
            self._total_size + incoming > self.max_total_size
            or len(self._store) >= self.max_entries
        ):
            self._evict_lru()

    def _evict_for_config(self, config: CacheConfig, keep: str) -> None:
        """
        Soft per-route cap: entries carrying all of the config's tags count as
        the route's namespace. Untagged configs fall back to the global count.
        """
        if config.max_entries <= 0:
            return
        wanted = set(config.tags)
        members = [
            k for k, e in self._store.items()
            if k != keep and wanted.issubset(e.tags)
        ]
        excess = len(members) + 1 - config.max_entries
        for key in members[:max(0, excess)]:
            self._remove(key)
            self._evictions += 1
            logger.info("CACHE EVICT → key=%s (route cap %s)", key, config.max_entries)
