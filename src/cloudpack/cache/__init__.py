from .local_cache import CacheEntry, LocalCache

__all__ = ["CacheEntry", "LocalCache"]
