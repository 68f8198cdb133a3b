import pytest

from conftest import run
from yelp.rate_limiter import RateLimiter


class FakeTime:
    """Clock plus sleep that advances it, so nothing waits for real."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


@pytest.fixture
def fake_time():
    return FakeTime()


def test_minimum_interval_floor():
    assert RateLimiter(max_per_second=10).min_request_interval == pytest.approx(0.08)
    assert RateLimiter(max_per_second=2).min_request_interval == pytest.approx(0.4)
    assert RateLimiter(max_per_second=100).min_request_interval == pytest.approx(0.08)


def test_first_request_does_not_wait(fake_time):
    limiter = RateLimiter(clock=fake_time.clock, sleep=fake_time.sleep)
    run(limiter.wait_for_slot())

    assert fake_time.sleeps == []


def test_requests_are_spaced(fake_time):
    limiter = RateLimiter(max_per_second=10, clock=fake_time.clock, sleep=fake_time.sleep)

    async def three():
        for _ in range(3):
            await limiter.wait_for_slot()

    run(three())
    assert fake_time.now == pytest.approx(0.16)


def test_per_second_cap_waits_for_next_window(fake_time):
    limiter = RateLimiter(max_per_second=2, clock=fake_time.clock, sleep=fake_time.sleep)

    async def three():
        for _ in range(3):
            await limiter.wait_for_slot()

    run(three())
    # 0.0, 0.4, then the window is full until 1.0
    assert fake_time.now == pytest.approx(1.0)
    assert limiter.get_quota_status()["perSecondUsed"] == 1


def test_daily_cap_waits_for_next_day(fake_time):
    limiter = RateLimiter(max_per_day=1, clock=fake_time.clock, sleep=fake_time.sleep)

    async def two():
        await limiter.wait_for_slot()
        await limiter.wait_for_slot()

    run(two())
    assert fake_time.now >= 86400.0
    assert limiter.get_quota_status()["dailyUsed"] == 1


def test_quota_status_and_percentage(fake_time):
    limiter = RateLimiter(max_per_day=4, clock=fake_time.clock, sleep=fake_time.sleep)
    run(limiter.wait_for_slot())

    status = limiter.get_quota_status()
    assert status["dailyUsed"] == 1
    assert status["dailyRemaining"] == 3
    assert limiter.get_daily_usage_percentage() == pytest.approx(25.0)
