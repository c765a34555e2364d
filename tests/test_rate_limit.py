import pytest

from generation.errors import RateLimitExceeded
from generation.rate_limit import RateLimiter
from tests.fakes import make_settings


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_sliding_window_blocks_and_recovers() -> None:
    clock = Clock()
    limiter = RateLimiter({"suno": (2, 60.0)}, clock=clock)
    limiter.check("u1", "suno")
    clock.now += 10
    limiter.check("u1", "suno")
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.check("u1", "suno")
    assert excinfo.value.retry_after == 50
    assert excinfo.value.limit == 2

    limiter.check("u2", "suno")
    clock.now += 51
    limiter.check("u1", "suno")


def test_unknown_service_is_unlimited() -> None:
    limiter = RateLimiter({"suno": (1, 60.0)})
    for _ in range(5):
        limiter.check("u1", "mureka")


def test_from_settings_reads_limits() -> None:
    limiter = RateLimiter.from_settings(make_settings(RATE_LIMIT_SUNO="3/30", RATE_LIMIT_MUREKA="7/70"))
    assert limiter.limits == {"suno": (3, 30.0), "mureka": (7, 70.0)}


def test_reset_clears_memory_window() -> None:
    limiter = RateLimiter({"suno": (1, 60.0)})
    limiter.check("u1", "suno")
    limiter.reset()
    limiter.check("u1", "suno")
