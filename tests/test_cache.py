import pytest

from ekb.core.exceptions import CacheError
from ekb.infrastructure.cache import InMemoryTTLCache
from ekb.utils.common import make_cache_key


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = InMemoryTTLCache(clock=clock)
    cache.set("k", {"a": 1}, 60)
    clock.now = 59.9
    assert cache.get("k") == {"a": 1}
    clock.now = 60.0
    assert cache.get("k") is None
    assert len(cache) == 0


def test_values_are_copies():
    cache = InMemoryTTLCache()
    value = [{"id": "x"}]
    cache.set("k", value, 60)
    value[0]["id"] = "changed"
    assert cache.get("k") == [{"id": "x"}]


def test_unserializable_value_raises_cache_error():
    with pytest.raises(CacheError):
        InMemoryTTLCache().set("k", object(), 60)


def test_full_cache_evicts_entries_closest_to_expiry():
    clock = Clock()
    cache = InMemoryTTLCache(max_entries=4, clock=clock)
    for i in range(4):
        cache.set(f"k{i}", i, 10 + i)
    cache.set("new", "v", 100)
    assert cache.get("k0") is None
    assert cache.get("k3") == 3
    assert cache.get("new") == "v"


def test_cache_key_format():
    key = make_cache_key("srch", "hello", 5)
    prefix, digest, limit = key.split(":")
    assert prefix == "srch" and limit == "5"
    assert len(digest) == 16
    assert make_cache_key("srch", "hello", 5) == key
    assert make_cache_key("rag", "hello", 5) != key
