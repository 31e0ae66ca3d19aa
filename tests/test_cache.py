"""Tests for the TTL cache and aggregation cache keys."""

from newswire.cache import TTLCache, aggregation_cache_key


class Ticker:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def test_get_set_and_expiry():
    tick = Ticker()
    cache = TTLCache(10, clock=tick)
    cache.set("a", 1)
    assert cache.get("a") == 1
    tick.t = 9.9
    assert cache.get("a") == 1
    tick.t = 10.0
    assert cache.get("a") is None
    assert cache.hits == 2
    assert cache.misses == 1


def test_per_entry_ttl_and_purge():
    tick = Ticker()
    cache = TTLCache(100, clock=tick)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2)
    tick.t = 5
    assert cache.purge_expired() == 1
    assert len(cache) == 1


def test_max_size_evicts_soonest_expiry():
    tick = Ticker()
    cache = TTLCache(10, max_size=2, clock=tick)
    cache.set("a", 1)
    tick.t = 1
    cache.set("b", 2)
    cache.set("c", 3)
    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_delete_prefix_and_clear():
    cache = TTLCache(10)
    cache.set("credibility:bbc.com|", 1)
    cache.set("credibility:bbc.com|BBC", 2)
    cache.set("credibility:cnn.com|", 3)
    assert cache.delete_prefix("credibility:bbc.com|") == 2
    assert cache.delete("credibility:cnn.com|")
    assert not cache.delete("missing")
    cache.set("x", 1)
    assert cache.clear() == 1


def _key(**overrides):
    params = dict(
        sources=["serpapi", "rss"],
        query="fed",
        category=None,
        country="us",
        language="en",
        limit=50,
        strategy="balanced",
    )
    params.update(overrides)
    return aggregation_cache_key(**params)


def test_cache_key_is_canonical():
    assert _key() == _key(sources=["rss", "serpapi"])
    assert _key().startswith("news:aggregated:")


def test_cache_key_distinguishes_parameters():
    base = _key()
    assert base != _key(limit=10)
    assert base != _key(strategy="quality")
    assert base != _key(sources=None)
    assert base != _key(extra={"dedup": False})
