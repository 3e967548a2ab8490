from sessionmux.sender.ratelimit import RateLimiter


class Clock:
    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


def test_limit_plus_one_yields_exactly_limit_successes():
    limiter = RateLimiter(limit=5, clock=Clock())
    results = [limiter.try_acquire("s1") for _ in range(6)]
    assert results.count(True) == 5
    assert results[-1] is False


def test_window_resets_exactly_after_window_length():
    clock = Clock(1_000)
    limiter = RateLimiter(limit=2, window_ms=60_000, clock=clock)
    assert limiter.try_acquire("s1")
    assert limiter.try_acquire("s1")

    clock.now = 60_999
    assert not limiter.try_acquire("s1")
    assert limiter.time_until_reset("s1") == 1

    clock.now = 61_000
    assert limiter.try_acquire("s1")
    assert limiter.snapshot("s1")["current"] == 1
    assert limiter.snapshot("s1")["reset_at_ms"] == 121_000


def test_keys_are_independent():
    limiter = RateLimiter(limit=1, clock=Clock())
    assert limiter.try_acquire("a")
    assert not limiter.try_acquire("a")
    assert limiter.try_acquire("b")


def test_check_does_not_count():
    limiter = RateLimiter(limit=1, clock=Clock())
    assert limiter.check("s1")
    assert limiter.check("s1")
    limiter.record("s1")
    assert not limiter.check("s1")


def test_remove_forgets_window():
    limiter = RateLimiter(limit=1, clock=Clock())
    limiter.try_acquire("s1")
    limiter.remove("s1")
    assert limiter.time_until_reset("s1") == 0
    assert limiter.try_acquire("s1")
