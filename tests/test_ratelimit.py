import threading

from viralclips.ratelimit import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_max_then_denies():
    clock = FakeClock()
    limiter = RateLimiter(10, 900, clock=clock)

    decisions = [limiter.check_and_increment("1.2.3.4") for _ in range(10)]
    assert all(decision.allowed for decision in decisions)
    assert [decision.count for decision in decisions] == list(range(1, 11))
    assert decisions[-1].remaining == 0

    denied = limiter.check_and_increment("1.2.3.4")
    assert denied.allowed is False
    assert denied.count == 10
    assert denied.reset_at == clock.now + 900


def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = RateLimiter(2, 60, clock=clock)
    limiter.check_and_increment("client")
    limiter.check_and_increment("client")
    assert limiter.check_and_increment("client").allowed is False

    clock.now += 61
    decision = limiter.check_and_increment("client")
    assert decision.allowed is True
    assert decision.count == 1
    assert decision.reset_at == clock.now + 60


def test_keys_are_counted_independently():
    limiter = RateLimiter(1, 60, clock=FakeClock())
    assert limiter.check_and_increment("a").allowed is True
    assert limiter.check_and_increment("a").allowed is False
    assert limiter.check_and_increment("b").allowed is True


def test_evict_expired_removes_only_stale_entries():
    clock = FakeClock()
    limiter = RateLimiter(5, 60, clock=clock)
    limiter.check_and_increment("old")
    clock.now += 30
    limiter.check_and_increment("new")
    clock.now += 31

    assert limiter.evict_expired() == 1
    assert len(limiter) == 1
    assert limiter.evict_expired() == 0


def test_concurrent_increments_never_exceed_limit():
    limiter = RateLimiter(50, 60)
    allowed = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            decision = limiter.check_and_increment("shared")
            if decision.allowed:
                with lock:
                    allowed.append(decision.count)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(allowed) == 50
    assert sorted(allowed) == list(range(1, 51))
