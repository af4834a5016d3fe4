# chaoscanvas/tests/test_ratelimit.py
from chaoscanvas.ratelimit import WindowRateLimiter, actor_key


def test_actor_key_defaults_unknown_ip():
    assert actor_key("u1", None) == "u1:unknown"
    assert actor_key("u1", "10.0.0.1") == "u1:10.0.0.1"


def test_window_admits_up_to_limit(limiter):
    key = actor_key("u1", "1.1.1.1")
    assert all(limiter.check(key) for _ in range(20))
    assert limiter.check(key) is False
    assert limiter.check(key) is False


def test_window_resets_after_expiry(limiter_clock):
    rl = WindowRateLimiter(max_requests=2, window_ms=1000, clock=limiter_clock)
    assert rl.check("k")
    assert rl.check("k")
    assert not rl.check("k")

    # the window boundary itself still belongs to the old window
    limiter_clock.t = 1.0
    assert not rl.check("k")

    limiter_clock.t = 1.001
    assert rl.check("k")
    assert rl.check("k")
    assert not rl.check("k")


def test_keys_are_independent(limiter_clock):
    rl = WindowRateLimiter(max_requests=1, window_ms=1000, clock=limiter_clock)
    assert rl.check(actor_key("u1", "a"))
    assert not rl.check(actor_key("u1", "a"))
    assert rl.check(actor_key("u1", "b"))
    assert rl.check(actor_key("u2", "a"))


def test_per_call_override(limiter_clock):
    rl = WindowRateLimiter(max_requests=1, window_ms=1000, clock=limiter_clock)
    assert rl.check("k", max_requests=3)
    assert rl.check("k", max_requests=3)
    assert rl.check("k", max_requests=3)
    assert not rl.check("k", max_requests=3)


def test_reset_and_eviction(limiter_clock):
    rl = WindowRateLimiter(max_requests=1, window_ms=1000, clock=limiter_clock, max_keys=2)
    rl.check("a")
    rl.check("b")
    assert len(rl) == 2

    limiter_clock.t = 5.0
    rl.check("c")
    # expired windows were swept to make room
    assert len(rl) == 1

    rl.reset("c")
    assert len(rl) == 0
    assert rl.check("c")
    rl.reset()
    assert len(rl) == 0
