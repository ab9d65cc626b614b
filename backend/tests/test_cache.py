from nutriclinic.services.cache import TTLCache, cache_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_key_ignores_order_and_empty_values():
    assert cache_key({"page": 1, "q": None, "page_size": 20}) == cache_key({"page_size": 20, "page": 1, "q": ""})
    assert cache_key({"page": 1}) != cache_key({"page": 2})


def test_hit_until_ttl_expires():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=30, clock=clock)

    assert cache.get({"page": 1}) == (False, None)
    cache.set({"page": 1}, {"items": []})
    assert cache.get({"page": 1}) == (True, {"items": []})

    clock.now += 31
    assert cache.get({"page": 1}) == (False, None)
    assert len(cache) == 0


def test_invalidate_drops_everything():
    cache = TTLCache(ttl_seconds=30)
    cache.set({"page": 1}, "a")
    cache.set({"page": 2}, "b")
    cache.invalidate()
    assert len(cache) == 0
    assert cache.get({"page": 1})[0] is False


def test_zero_ttl_disables_caching():
    cache = TTLCache(ttl_seconds=0)
    cache.set({"page": 1}, "a")
    assert cache.get({"page": 1}) == (False, None)
