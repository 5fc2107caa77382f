"""
cache_manager.py
----------------
Route cache policies and the invalidation surface used by data-mutation paths.
"""
from __future__ import annotations
import logging
from typing import Any, Iterable, List, Optional

from app_types import CacheTag
from cache_store import CacheConfig, MemoryCache

logger = logging.getLogger("uvicorn.error")

MINUTE_MS = 60 * 1000

CACHE_CONFIGS = {
    # Static content
    "legislation": CacheConfig(duration=60 * MINUTE_MS, max_entries=1000, tags=(CacheTag.LEGISLATION.value,)),
    "articles": CacheConfig(duration=30 * MINUTE_MS, max_entries=2000, tags=(CacheTag.ARTICLES.value,)),
    "cases": CacheConfig(duration=15 * MINUTE_MS, max_entries=1000, tags=(CacheTag.CASES.value,)),
    "search": CacheConfig(duration=5 * MINUTE_MS, max_entries=500, tags=(CacheTag.SEARCH.value,)),
    # Personalized; never cached
    "reports": CacheConfig(duration=0, max_entries=0, tags=(CacheTag.REPORTS.value,)),
}


class CacheManager:
    """Manual cache operations plus the "what to clear when X changes" policy."""

    def __init__(self, store: MemoryCache) -> None:
        self.store = store

    def get(self, key: str, default: Any = None) -> Any:
        return self.store.get(key, default)

    def set(self, key: str, payload: Any, config: CacheConfig) -> bool:
        return self.store.set(key, payload, config)

    def delete(self, key: str) -> bool:
        return self.store.delete(key)

    def delete_by_tags(self, tags: Iterable[str]) -> int:
        tags = [tags] if isinstance(tags, str) else list(tags)
        removed = self.store.delete_by_tags(tags)
        logger.info("CACHE INVALIDATE → tags=%s removed=%s", tags, removed)
        return removed

    def clear(self) -> None:
        self.store.clear()
        logger.info("Cache cleared")

    def stats(self) -> dict:
        return self.store.stats()

    def _invalidate(self, tags: List[CacheTag], scoped: CacheTag, record_id: Optional[str]) -> int:
        names = [t.value for t in tags]
        if record_id:
            names.append(scoped.scoped(record_id))
        return self.delete_by_tags(names)

    def invalidate_legislation(self, legislation_id: Optional[str] = None) -> int:
        return self._invalidate(
            [CacheTag.LEGISLATION, CacheTag.LEGISLATIONS, CacheTag.ARTICLES, CacheTag.SEARCH], CacheTag.LEGISLATION, legislation_id
        )

    def invalidate_article(self, article_id: Optional[str] = None) -> int:
        return self._invalidate(
            [CacheTag.ARTICLES, CacheTag.CASES, CacheTag.SEARCH], CacheTag.ARTICLE, article_id
        )

    def invalidate_case(self, case_id: Optional[str] = None) -> int:
        return self._invalidate(
            [CacheTag.CASES, CacheTag.ARTICLES, CacheTag.SEARCH], CacheTag.CASE, case_id
        )
