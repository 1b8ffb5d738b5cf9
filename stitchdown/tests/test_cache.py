"""
Tests for the TTL cache.
"""

from stitchdown.cache import TTLCache


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestTTLCache:
    def test_fresh_entry_is_returned(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 9.9
        assert cache.get("k") == "v"
        assert "k" in cache

    def test_entry_expires_at_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 10
        assert cache.get("k") is None
        assert "k" not in cache
        # expired entries stay until purged
        assert len(cache) == 1

    def test_per_call_ttl_overrides_default(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 5
        assert cache.get("k", ttl=1) is None
        assert cache.get("k", ttl=60) == "v"

    def test_set_refreshes_timestamp(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", "old")
        clock.now = 8
        cache.set("k", "new")
        clock.now = 15
        assert cache.get("k") == "new"
        assert cache.entry("k").timestamp == 8

    def test_purge_and_clear(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("a", "1")
        clock.now = 5
        cache.set("b", "2")
        clock.now = 12
        assert cache.purge_expired() == 1
        assert list(cache) == ["b"]
        cache.clear()
        assert len(cache) == 0

    def test_empty_string_is_cached(self):
        cache = TTLCache(ttl=10, clock=FakeClock())
        cache.set("k", "")
        assert cache.get("k") == ""

    def test_default_ttl(self):
        assert TTLCache().ttl == 30.0

