import pytest

from scannode.rate_limiter import RateLimiter

TEST_CLIENT_ID = "1"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_rate_limiting():
    clock = FakeClock()
    limiter = RateLimiter(0.5, 1, clock)  # replenish every 2s
    assert limiter.exceeds_limit(TEST_CLIENT_ID) is False
    assert limiter.exceeds_limit(TEST_CLIENT_ID) is True
    clock.advance(5)
    assert limiter.exceeds_limit(TEST_CLIENT_ID) is False


@pytest.mark.parametrize("rate", [0, -1.0])
def test_non_positive_rate_rejected(rate):
    with pytest.raises(ValueError):
        RateLimiter(rate, 1)


def test_clients_are_limited_independently():
    clock = FakeClock()
    limiter = RateLimiter(0.5, 1, clock)
    assert limiter.exceeds_limit("a") is False
    assert limiter.exceeds_limit("a") is True
    assert limiter.exceeds_limit("b") is False


def test_burst_allows_that_many_requests():
    clock = FakeClock()
    limiter = RateLimiter(1.0, 3, clock)
    results = [limiter.exceeds_limit("c") for _ in range(4)]
    assert results == [False, False, False, True]


def test_zero_burst_always_exceeds():
    clock = FakeClock()
    limiter = RateLimiter(10.0, 0, clock)
    clock.advance(100)
    assert limiter.exceeds_limit("c") is True


def test_without_cleanup_bucket_stays_empty():
    clock = FakeClock()
    limiter = RateLimiter(0.001, 1, clock)
    limiter.exceeds_limit("c")
    clock.advance(700)
    assert limiter.exceeds_limit("c") is True


def test_cleanup_removes_idle_clients():
    clock = FakeClock()
    limiter = RateLimiter(0.001, 1, clock)
    limiter.exceeds_limit("c")
    clock.advance(700)
    assert limiter.cleanup(600) == 1
    assert limiter.exceeds_limit("c") is False


def test_cleanup_keeps_active_clients():
    clock = FakeClock()
    limiter = RateLimiter(0.001, 1, clock)
    limiter.exceeds_limit("c")
    clock.advance(100)
    assert limiter.cleanup(600) == 0
    assert limiter.exceeds_limit("c") is True


def test_hourly_cleanup_runs_automatically():
    clock = FakeClock()
    limiter = RateLimiter(0.0001, 1, clock)
    limiter.exceeds_limit("c")
    clock.advance(3600)
    assert limiter.exceeds_limit("c") is False