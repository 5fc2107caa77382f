from .cache_tags import CacheTag, InvalidationKind

__all__ = ["CacheTag", "InvalidationKind"]
