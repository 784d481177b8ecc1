import pytest

import app.services.cache as cache_module
from app.services.cache import MISS, InMemoryTransport, ResponseCache


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = _Clock()
    monkeypatch.setattr(cache_module.time, "monotonic", fake)
    return fake


class _BrokenTransport:
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl_sec):
        raise ConnectionError("cache down")

    def delete(self, key):
        raise ConnectionError("cache down")

    def clear(self):
        raise ConnectionError("cache down")


def test_entries_expire_after_ttl(clock):
    cache = ResponseCache(InMemoryTransport())
    cache.set("k", [1, 2], ttl_sec=60)

    clock.now += 59
    assert cache.get("k") == [1, 2]

    clock.now += 1
    assert cache.get("k") is MISS


def test_cached_values_are_copies(clock):
    cache = ResponseCache(InMemoryTransport())
    value = {"records": [1]}
    cache.set("k", value, ttl_sec=60)

    value["records"].append(2)
    cache.get("k")["records"].append(3)

    assert cache.get("k") == {"records": [1]}


def test_non_positive_ttl_is_not_stored(clock):
    cache = ResponseCache(InMemoryTransport())

    assert cache.set("k", 1, ttl_sec=0) is False
    assert cache.get("k") is MISS


def test_full_store_evicts_soonest_expiring(clock):
    transport = InMemoryTransport(max_entries=2)
    transport.set("short", 1, ttl_sec=10)
    transport.set("long", 2, ttl_sec=100)

    transport.set("new", 3, ttl_sec=50)

    assert transport.get("short") is MISS
    assert transport.get("long") == 2
    assert transport.get("new") == 3


def test_invalidate_and_clear(clock):
    cache = ResponseCache(InMemoryTransport())
    cache.set("a", 1, ttl_sec=60)
    cache.set("b", 2, ttl_sec=60)

    assert cache.invalidate("a") is True
    assert cache.get("a") is MISS
    assert cache.clear() is True
    assert cache.get("b") is MISS


def test_failing_transport_degrades_to_miss():
    cache = ResponseCache(_BrokenTransport())

    assert cache.get("k") is MISS
    assert cache.set("k", 1, ttl_sec=60) is False
    assert cache.invalidate("k") is False
    assert cache.clear() is False
