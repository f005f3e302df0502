import asyncio

import pytest

from viddown.ratelimit import RateLimiter, client_identity


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def test_burst_beyond_rate_is_rejected():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock)
    results = []
    for _ in range(6):
        results.append(limiter.allow("203.0.113.7"))
        clock.advance(0.1)
    assert results.count(True) == 5
    assert results[-1] is False


def test_tokens_refill_after_one_interval():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock)
    for _ in range(5):
        assert limiter.allow("a")
    assert not limiter.allow("a")
    clock.advance(60 / 5 + 0.01)
    assert limiter.allow("a")
    assert not limiter.allow("a")


def test_tokens_never_exceed_burst_capacity():
    clock = FakeClock()
    limiter = RateLimiter(3, clock=clock)
    limiter.allow("a")
    clock.advance(3600)
    assert [limiter.allow("a") for _ in range(4)] == [True, True, True, False]


def test_identities_are_independent():
    limiter = RateLimiter(1, clock=FakeClock())
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")


def test_sweep_evicts_only_idle_buckets():
    clock = FakeClock()
    limiter = RateLimiter(10, clock=clock)
    limiter.allow("idle")
    clock.advance(120)
    limiter.allow("active")
    clock.advance(61)

    assert limiter.sweep() == 1
    assert "idle" not in limiter
    assert "active" in limiter
    assert len(limiter) == 1


def test_sweeper_task_runs_and_stops():
    clock = FakeClock()

    async def scenario():
        limiter = RateLimiter(5, sweep_interval=0.01, idle_after=0.5, clock=clock)
        limiter.allow("a")
        clock.advance(1)
        limiter.start_sweeper()
        assert limiter.sweeper_running
        await asyncio.sleep(0.05)
        assert "a" not in limiter
        await limiter.stop_sweeper()
        assert not limiter.sweeper_running

    asyncio.run(scenario())


def test_requests_per_minute_must_be_positive():
    with pytest.raises(ValueError):
        RateLimiter(0)


@pytest.mark.parametrize(
    "forwarded, remote, expected",
    [
        ("203.0.113.7, 10.0.0.1", "127.0.0.1", "203.0.113.7"),
        ("  198.51.100.4:8080 ", "127.0.0.1", "198.51.100.4"),
        (None, "10.0.0.2:5555", "10.0.0.2"),
        ("", "10.0.0.3", "10.0.0.3"),
        (None, "::1", "::1"),
        ("2001:db8::1, 10.0.0.1", "127.0.0.1", "2001:db8::1"),
    ],
)
def test_client_identity(forwarded, remote, expected):
    assert client_identity(forwarded, remote) == expected
