from panel.utils.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("auth0|a", True)

    clock.value = 9.9
    assert cache.get("auth0|a") is True
    clock.value = 10
    assert cache.get("auth0|a") is None


def test_per_entry_ttl_overrides_default():
    clock = FakeClock()
    cache = TTLCache(300, clock=clock)
    cache.set("auth0|gone", False, ttl_seconds=30)

    clock.value = 29
    assert cache.get("auth0|gone") is False
    clock.value = 31
    assert cache.get("auth0|gone", "missing") == "missing"


def test_evict_expired_drops_only_stale_entries():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("old", 1, ttl_seconds=5)
    cache.set("new", 2, ttl_seconds=50)

    clock.value = 6
    assert cache.evict_expired() == 1
    assert len(cache) == 1
    assert cache.get("new") == 2


def test_delete():
    cache = TTLCache(10)
    cache.set("key", "value")
    cache.delete("key")
    cache.delete("key")
    assert cache.get("key") is None
