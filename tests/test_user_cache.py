from __future__ import annotations

from src.utils.cache import UserTTLCache


def test_entry_expires_after_ttl():
    now = [0.0]
    cache: UserTTLCache[dict] = UserTTLCache(10, clock=lambda: now[0])
    cache.set(1, {"v": 1})
    now[0] = 9.9
    assert cache.get(1) == {"v": 1}
    now[0] = 10.0
    assert cache.get(1) is None
    assert len(cache) == 0


def test_one_entry_per_user_and_clear():
    cache: UserTTLCache[str] = UserTTLCache(60)
    cache.set("a", "first")
    cache.set("a", "second")
    cache.set("b", "other")
    assert cache.get("a") == "second"
    cache.clear("a")
    assert cache.get("a") is None
    assert cache.get("b") == "other"
