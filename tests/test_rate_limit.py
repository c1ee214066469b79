from __future__ import annotations

from src.utils.rate_limit import PRUNE_AFTER_KEYS, EndpointLimit, FixedWindowRateLimiter


class FakeClock:
    def __init__(self, t: float = 1_000_020.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def _limiter(clock: FakeClock, n: int = 3) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter({"/api/ai/chat": EndpointLimit(n)}, window_s=60, clock=clock)


def test_allows_up_to_limit_then_rejects():
    clock = FakeClock()
    rl = _limiter(clock)
    for _ in range(3):
        assert rl.check("u1", "/api/ai/chat").exceeded is False
    res = rl.check("u1", "/api/ai/chat")
    assert res.exceeded is True
    assert res.response["status"] == 429
    assert res.response["success"] is False
    assert "Maximum 3 requests per minute" in res.response["error"]
    assert res.headers["X-RateLimit-Remaining"] == "0"


def test_users_are_counted_separately():
    clock = FakeClock()
    rl = _limiter(clock, n=1)
    assert rl.check("u1", "/api/ai/chat").exceeded is False
    assert rl.check("u1", "/api/ai/chat").exceeded is True
    assert rl.check("u2", "/api/ai/chat").exceeded is False


def test_new_window_resets_count():
    clock = FakeClock()
    rl = _limiter(clock, n=1)
    rl.check("u1", "/api/ai/chat")
    assert rl.is_exceeded("u1", "/api/ai/chat")
    clock.t += 60
    assert not rl.is_exceeded("u1", "/api/ai/chat")


def test_unknown_endpoint_and_anonymous_user():
    rl = _limiter(FakeClock())
    assert rl.remaining("u1", "/api/other") is None
    assert rl.headers("u1", "/api/other") == {}
    assert rl.is_exceeded("u1", "/api/other") is False
    assert rl.remaining("", "/api/ai/chat") == 0
    assert rl.is_exceeded(None, "/api/ai/chat") is False


def test_headers_report_next_window_start():
    clock = FakeClock(120.5)
    rl = _limiter(clock)
    rl.increment("u1", "/api/ai/chat")
    h = rl.headers("u1", "/api/ai/chat")
    assert h == {"X-RateLimit-Limit": "3", "X-RateLimit-Remaining": "2", "X-RateLimit-Reset": "180"}


def test_reset_user_and_stats():
    rl = _limiter(FakeClock())
    rl.increment("u1", "/api/ai/chat")
    rl.increment("u1", "/api/ai/chat")
    rl.increment("u2", "/api/ai/chat")
    assert rl.stats() == {"/api/ai/chat": {"u1": 2, "u2": 1}}
    rl.reset_user("u1")
    assert rl.stats() == {"/api/ai/chat": {"u2": 1}}
    rl.reset("u2", "/api/ai/chat")
    assert rl.stats() == {}


def test_ids_containing_colons_are_kept_apart():
    clock = FakeClock()
    rl = _limiter(clock)
    rl.increment("alice:team", "/api/ai/chat")
    rl.increment("alice", "/api/ai/chat")
    rl.increment("alice", "/api/ai/chat")
    assert rl.stats() == {"/api/ai/chat": {"alice:team": 1, "alice": 2}}

    rl.reset_user("alice")
    assert rl.stats() == {"/api/ai/chat": {"alice:team": 1}}
    assert rl.remaining("alice:team", "/api/ai/chat") == 2


def test_prune_drops_old_windows_for_any_id():
    clock = FakeClock()
    rl = _limiter(clock)
    rl.increment("alice:team", "/api/ai/chat")
    clock.t += 60 * 3
    for i in range(PRUNE_AFTER_KEYS + 1):
        rl.increment(f"user:{i}", "/api/ai/chat")

    usage = rl.stats()["/api/ai/chat"]
    assert "alice:team" not in usage
    assert len(usage) == PRUNE_AFTER_KEYS + 1
    assert rl.check("alice:team", "/api/ai/chat").exceeded is False
