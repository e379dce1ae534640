"""Tests for the in-memory LRU map."""

import threading

import pytest

from cloudpack.utils.lru_cache import LRUCache


class TestLRUCache:
    """Test LRUCache behaviour."""

    def test_evicts_least_recently_used(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert cache.get("c") == 3
        assert len(cache) == 2

    def test_refresh_existing_key(self):
        cache = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_pop_and_clear(self):
        cache = LRUCache()
        cache.set("a", 1)

        assert cache.pop("a") == 1
        assert cache.pop("a") is None

        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)

    def test_concurrent_writes_respect_capacity(self):
        cache = LRUCache(max_size=50)

        def writer(offset):
            for i in range(200):
                cache.set((offset, i), i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 50
