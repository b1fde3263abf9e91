import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rate_limit import MemoryRateLimitStore, RateLimiter  # noqa: E402


class Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_allows_limit_then_rejects_until_reset():
    clock = Clock(100.0)
    limiter = RateLimiter(3, 60, clock=clock)

    results = [limiter.check("user:1") for _ in range(4)]
    assert [r[0] for r in results] == [True, True, True, False]
    assert [r[1] for r in results] == [2, 1, 0, 0]
    assert results[-1][2] == 60.0

    clock.now = 130.0
    allowed, _remaining, retry_after = limiter.check("user:1")
    assert allowed is False
    assert retry_after == 30.0

    clock.now = 160.0
    allowed, remaining, _ = limiter.check("user:1")
    assert allowed is True
    assert remaining == 2


def test_keys_are_counted_separately():
    limiter = RateLimiter(1, 60, clock=Clock(0.0))
    assert limiter.check("a")[0] is True
    assert limiter.check("a")[0] is False
    assert limiter.check("b")[0] is True


def test_store_can_be_shared_between_limiters():
    store = MemoryRateLimitStore()
    clock = Clock(0.0)
    first = RateLimiter(2, 60, store=store, clock=clock)
    second = RateLimiter(2, 60, store=store, clock=clock)

    assert first.check("k")[0] is True
    assert second.check("k")[0] is True
    assert first.check("k")[0] is False


def test_purge_drops_expired_windows():
    store = MemoryRateLimitStore()
    store.incr("old", 10, now=0.0)
    store.incr("fresh", 10, now=5.0)
    assert store.purge(now=12.0) == 1
    assert store.incr("fresh", 10, now=12.0)[0] == 2


def test_check_drops_expired_windows_as_traffic_moves_on():
    clock = Clock(0.0)
    limiter = RateLimiter(5, 60, clock=clock)

    for i in range(1000):
        clock.now = i * 120.0
        assert limiter.check(f"api:ip-{i}")[0] is True

    assert len(limiter.store._data) <= 1


def test_check_keeps_live_windows():
    clock = Clock(0.0)
    limiter = RateLimiter(1, 60, clock=clock)
    assert limiter.check("a")[0] is True
    clock.now = 61.0
    limiter.check("b")
    clock.now = 100.0
    assert limiter.check("b")[0] is False
